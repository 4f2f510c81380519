import asyncio
import ipaddress
import logging
import re
import socket
from collections.abc import Awaitable, Callable

from .config import SuspendSettings
from .errors import ExpectedDisconnect, InvalidAddress, NetworkSendFailure, RemoteExecFailure
from .models import PowerResult, TargetConfig
from .ssh_utils import ExecErrorKind, ExecResult, RemoteExecutor

logger = logging.getLogger(__name__)

GLOBAL_BROADCAST = "255.255.255.255"
WOL_PORT = 9
WOL_FALLBACK_PORT = 7  # Discard protocol, accepted by some NICs instead of 9
SEND_TIMEOUT_SECONDS = 5.0

INTERFACE_NAME_RE = re.compile(r"^[A-Za-z0-9_.:@-]+$")

DatagramSender = Callable[[bytes, str, int], Awaitable[None]]
DisconnectPredicate = Callable[[ExecResult], bool]


def normalize_mac(mac: str) -> bytes:
    """Return the 6 raw bytes of a MAC given with ``:``/``-`` separators or none."""
    hex_digits = re.sub(r"[:-]", "", mac).lower()
    if not re.fullmatch(r"[0-9a-f]{12}", hex_digits):
        msg = f"Invalid MAC address format: {mac!r}"
        raise InvalidAddress(msg)
    return bytes.fromhex(hex_digits)


def build_magic_packet(mac: str) -> bytes:
    """Six 0xFF bytes followed by the MAC repeated 16 times (102 bytes)."""
    return b"\xff" * 6 + normalize_mac(mac) * 16


def subnet_broadcast(address: str, prefix: int = 24) -> str:
    network = ipaddress.IPv4Network(f"{address}/{prefix}", strict=False)
    return str(network.broadcast_address)


async def send_udp_broadcast(packet: bytes, address: str, port: int) -> None:
    """Send one datagram with SO_BROADCAST enabled."""
    loop = asyncio.get_running_loop()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        await loop.sock_sendto(sock, packet, (address, port))


def disconnect_kinds_predicate(kinds: set[ExecErrorKind]) -> DisconnectPredicate:
    """Build a predicate accepting results whose error kind is in ``kinds``."""

    def _predicate(result: ExecResult) -> bool:
        return result.error_kind in kinds

    return _predicate


class PowerController:
    """Wakes the target with Wake-on-LAN and suspends it over the control channel."""

    def __init__(
        self,
        target: TargetConfig,
        executor: RemoteExecutor,
        suspend_settings: SuspendSettings | None = None,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
        sender: DatagramSender | None = None,
        expected_disconnect: DisconnectPredicate | None = None,
    ):
        self.target = target
        self.executor = executor
        self.suspend_settings = suspend_settings or SuspendSettings()
        self.send_timeout = send_timeout
        self._sender = sender or send_udp_broadcast
        if expected_disconnect is None:
            kinds = {ExecErrorKind(kind) for kind in self.suspend_settings.expected_disconnect_kinds}
            expected_disconnect = disconnect_kinds_predicate(kinds)
        self.is_expected_disconnect = expected_disconnect

    def destinations(self) -> list[tuple[str, int]]:
        try:
            subnet = subnet_broadcast(self.target.address, self.target.broadcast_prefix)
        except ValueError:
            logger.warning("Cannot derive a subnet broadcast address from %s", self.target.address)
            subnet = None
        return [
            (GLOBAL_BROADCAST, WOL_PORT),
            (subnet, WOL_PORT),
            (self.target.address, WOL_PORT),
            (GLOBAL_BROADCAST, WOL_FALLBACK_PORT),
        ]

    async def _send_to(self, packet: bytes, address: str | None, port: int) -> None:
        if address is None:
            raise NetworkSendFailure("subnet-broadcast", port, "no broadcast address for target")
        try:
            await asyncio.wait_for(self._sender(packet, address, port), timeout=self.send_timeout)
        except TimeoutError:
            raise NetworkSendFailure(address, port, f"timeout after {self.send_timeout}s") from None
        except OSError as e:
            raise NetworkSendFailure(address, port, str(e) or type(e).__name__) from e
        logger.debug("WoL packet sent to %s:%d", address, port)

    async def wake(self) -> PowerResult:
        """Send the magic packet to every destination; succeed if any send does."""
        logger.info("Sending Wake-on-LAN packet to MAC address %s", self.target.mac)
        try:
            packet = build_magic_packet(self.target.mac)
        except InvalidAddress as e:
            logger.error("Failed to send Wake-on-LAN packet: %s", e)
            return PowerResult(success=False, message=f"Failed to send Wake-on-LAN packet: {e}")

        destinations = self.destinations()
        results = await asyncio.gather(
            *(self._send_to(packet, address, port) for address, port in destinations), return_exceptions=True
        )
        failures = [result for result in results if isinstance(result, Exception)]
        for failure in failures:
            if not isinstance(failure, NetworkSendFailure):
                logger.error("Unexpected error sending WoL packet: %r", failure)
        succeeded = len(destinations) - len(failures)

        if succeeded > 0:
            logger.info("WoL packet sent successfully (%d/%d methods succeeded).", succeeded, len(destinations))
            return PowerResult(
                success=True,
                message=(
                    f"Wake-on-LAN packet sent successfully via {succeeded} method(s). "
                    "The server should wake up shortly."
                ),
            )

        combined = "; ".join(str(failure) for failure in failures)
        logger.error("All WoL sending methods failed: %s", combined)
        return PowerResult(success=False, message=f"Failed to send Wake-on-LAN packet: all methods failed ({combined})")

    async def _detect_interface(self) -> str:
        result = await self.executor.execute(
            self.suspend_settings.interface_command, timeout=self.suspend_settings.timeout_seconds
        )
        if not result.ok:
            msg = f"Could not determine network interface: {result.error}"
            raise RemoteExecFailure(msg)
        lines = result.stdout.strip().splitlines()
        interface = lines[0].strip() if lines else ""
        if not interface or not INTERFACE_NAME_RE.match(interface):
            msg = f"Could not determine primary network interface on the target server (got {interface!r})."
            raise RemoteExecFailure(msg)
        return interface

    async def _arm_and_suspend(self, interface: str) -> None:
        command = self.suspend_settings.suspend_command.format(interface=interface)
        logger.info("Executing sleep command: %r", command)
        result = await self.executor.execute(command, timeout=self.suspend_settings.timeout_seconds)
        if result.ok:
            return
        if self.is_expected_disconnect(result):
            raise ExpectedDisconnect(result.error or "connection dropped")
        raise RemoteExecFailure(result.error or "remote command failed")

    async def suspend(self) -> PowerResult:
        """Re-arm Wake-on-LAN on the active interface, then suspend the target."""
        logger.info("Attempting to put server %s to sleep.", self.target.address)
        try:
            interface = await self._detect_interface()
            logger.info("Detected network interface: %s", interface)
            await self._arm_and_suspend(interface)
        except ExpectedDisconnect as e:
            logger.info("Sleep successful - control connection dropped as expected (%s).", e)
        except RemoteExecFailure as e:
            logger.error("Failed to put server to sleep: %s", e)
            return PowerResult(success=False, message=f"Failed to put server to sleep: {e}")
        return PowerResult(success=True, message="Sleep command sent successfully. The server should suspend shortly.")
