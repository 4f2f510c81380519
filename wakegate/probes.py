import asyncio
import logging

from . import parsers

logger = logging.getLogger(__name__)


async def ping_host(address: str, timeout: int = 3) -> tuple[bool, float | None]:
    """Send one ICMP echo with the system ``ping`` binary.

    Returns ``(alive, round_trip_ms)``; the round trip is None when it
    could not be parsed.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            "ping",
            "-c",
            "1",
            "-W",
            str(timeout),
            address,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        logger.exception("Could not run ping for %s", address)
        return False, None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout + 2)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.debug("ping to %s did not finish in time", address)
        return False, None

    if process.returncode != 0:
        return False, None
    return True, parsers.parse_ping_time(stdout.decode(errors="replace"))


async def check_port_open(host: str, port: int, timeout: float = 3) -> bool:
    """Return True if a TCP connection to ``host:port`` can be established."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError) as e:
        logger.debug("Port %s:%d closed: %s", host, port, e)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
