import asyncio
import errno
import logging
import random
import time
from collections.abc import Awaitable, Callable

import httpx

from .models import HealthCheckPolicy, ReadinessResult

logger = logging.getLogger(__name__)

INITIAL_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 5.0
BACKOFF_FACTOR = 1.2
MAX_JITTER_SECONDS = 0.5


def is_connection_refused(exc: BaseException) -> bool:
    """Walk the exception chain looking for a refused TCP connection."""
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if isinstance(current, OSError) and current.errno == errno.ECONNREFUSED:
            return True
        current = current.__cause__ or current.__context__
    return False


def classify_http_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if is_connection_refused(exc):
        return "connection_refused"
    return "network"


class ReadinessProbe:
    """HTTP readiness checks against the target service.

    ``check`` performs one request and never raises for network problems.
    ``wait_until_ready`` repeats it with bounded exponential backoff plus
    jitter: the delay starts at one second and grows by ``delay * 1.2 +
    uniform(0, 0.5)`` up to five seconds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        max_delay: float = MAX_DELAY_SECONDS,
    ):
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def next_delay(self, delay: float) -> float:
        return min(self.max_delay, delay * BACKOFF_FACTOR + self._rng.uniform(0, MAX_JITTER_SECONDS))

    async def check(self, host: str, port: int, policy: HealthCheckPolicy) -> ReadinessResult:
        """Perform one health request and classify its status code."""
        url = f"http://{host}:{port}{policy.path}"
        logger.debug("Health check: %s %s (timeout: %ss)", policy.method, url, policy.timeout_seconds)
        try:
            response = await self.client.request(
                policy.method, url, timeout=policy.timeout_seconds, follow_redirects=False
            )
        except httpx.HTTPError as e:
            kind = classify_http_error(e)
            logger.debug("Health check failed (%s): %s", kind, e)
            return ReadinessResult(ready=False, error=str(e) or type(e).__name__, error_kind=kind)

        healthy = policy.accepts(response.status_code)
        logger.debug("Health check response: %d (healthy: %s)", response.status_code, healthy)
        return ReadinessResult(ready=healthy, status_code=response.status_code)

    async def wait_until_ready(
        self, host: str, port: int, policy: HealthCheckPolicy, max_wait_seconds: float
    ) -> bool:
        """Poll ``check`` until it reports ready or ``max_wait_seconds`` elapse."""
        start = self._clock()
        attempt = 0
        delay = self.initial_delay

        while self._clock() - start < max_wait_seconds:
            attempt += 1
            logger.debug("Service readiness check attempt %d (delay: %.2fs)", attempt, delay)
            result = await self.check(host, port, policy)
            if result.ready:
                logger.info(
                    "Service became ready after %.0f seconds (%d attempts) - HTTP %s",
                    self._clock() - start,
                    attempt,
                    result.status_code,
                )
                return True

            logger.debug("Service not ready: %s", result.describe())
            remaining = max_wait_seconds - (self._clock() - start)
            if remaining <= 0:
                break
            await self._sleep(min(delay, remaining))
            delay = self.next_delay(delay)

        logger.warning("Service readiness timeout after %.0f seconds (%d attempts)", self._clock() - start, attempt)
        return False
