import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from . import probes
from .config import ProxySettings
from .errors import ConnectionRefused, ReadinessTimeout, RequestTimeout, WakeFailure
from .models import HealthCheckPolicy, TargetConfig, utcnow
from .monitor import ServerMonitor
from .power import PowerController
from .readiness import ReadinessProbe, is_connection_refused

logger = logging.getLogger(__name__)

# Requests to these paths are served by wakegate itself and never proxied
INTERNAL_PATHS = frozenset(
    {
        "/api/status",
        "/api/status_sse",
        "/api/wake",
        "/api/sleep",
        "/api/config",
        "/api/config/autosleep",
        "/health",
    }
)

HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"proxy-connection",
        b"te",
        b"trailer",
        b"transfer-encoding",
        b"upgrade",
    }
)

BODYLESS_METHODS = frozenset({"GET", "HEAD"})


def is_internal_path(path: str) -> bool:
    return path in INTERNAL_PATHS


class ProxyGateway:
    """Transparent proxy that wakes the target on demand.

    Every proxied request counts as activity. Readiness is probed directly
    rather than read from the monitor's cached status; if the service is not
    ready the host is woken (when it does not answer pings) and the gateway
    waits for readiness within the wake budget before forwarding.
    """

    def __init__(
        self,
        target: TargetConfig,
        health_check: HealthCheckPolicy,
        settings: ProxySettings,
        power: PowerController,
        probe: ReadinessProbe,
        monitor: ServerMonitor,
        client: httpx.AsyncClient | None = None,
        ping: Callable[[str, int], Awaitable[tuple[bool, float | None]]] = probes.ping_host,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ping_timeout: int = 3,
    ):
        self.target = target
        self.health_check = health_check
        self.settings = settings
        self.power = power
        self.probe = probe
        self.monitor = monitor
        self._client = client
        self._owns_client = client is None
        self._ping = ping
        self._sleep = sleep
        self.ping_timeout = ping_timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds, follow_redirects=False
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def target_label(self) -> str:
        return f"{self.target.address}:{self.target.service_port}"

    async def handle(self, request: Request) -> Response:
        """Ensure the target is ready, then forward the request to it."""
        self.monitor.record_activity()
        logger.info("Transparent proxy triggered for [%s] %s", request.method, request.url.path)
        try:
            await self.ensure_ready()
            return await self.forward(request)
        except Exception as e:
            logger.error("Proxy error for %s %s: %s", request.method, request.url.path, e)
            return self.error_response(e)

    async def ensure_ready(self) -> None:
        """Wake the target if needed and wait for its service to accept requests."""
        address, port = self.target.address, self.target.service_port
        health = await self.probe.check(address, port, self.health_check)
        if health.ready:
            logger.debug("Target service is immediately available (HTTP %s)", health.status_code)
            await self._settle()
            return

        logger.info("Target service not ready (%s). Checking if server needs to be woken...", health.describe())
        alive, _ = await self._ping(address, self.ping_timeout)
        woke = False
        if not alive:
            logger.info("Server is offline. Sending Wake-on-LAN packet...")
            wake_result = await self.power.wake()
            if not wake_result.success:
                msg = f"Failed to wake server: {wake_result.message}"
                raise WakeFailure(msg)
            woke = True
            logger.info("Wake-on-LAN packet sent, waiting for server to boot...")
        else:
            logger.info("Server is online but service not ready. Waiting for service to start...")

        ready = await self.probe.wait_until_ready(address, port, self.health_check, self.settings.wake_timeout_seconds)
        if not ready:
            if not woke:
                # Host answered pings the whole time; a refusing port means nothing listens
                final = await self.probe.check(address, port, self.health_check)
                if final.ready:
                    ready = True
                elif final.error_kind == "connection_refused":
                    msg = f"Target server refused connection ({final.error})"
                    raise ConnectionRefused(msg)
            if not ready:
                msg = f"Service readiness timeout after {self.settings.wake_timeout_seconds:g} seconds"
                raise ReadinessTimeout(msg)

        logger.info("Target service is now ready for requests")
        await self._settle()

    async def _settle(self) -> None:
        if self.settings.readiness_buffer_ms > 0:
            await self._sleep(self.settings.readiness_buffer_ms / 1000)
            logger.debug("Applied %dms readiness buffer", self.settings.readiness_buffer_ms)

    def _upstream_headers(self, request: Request, has_body: bool) -> list[tuple[bytes, bytes]]:
        dropped = HOP_BY_HOP_HEADERS | {b"host"}
        if not has_body:
            # No body is sent upstream, so a client Content-Length would make it wait for one
            dropped = dropped | {b"content-length"}
        headers = [(name, value) for name, value in request.headers.raw if name.lower() not in dropped]
        headers.append((b"host", self.target_label.encode()))
        return headers

    def _upstream_url(self, request: Request) -> httpx.URL:
        # Undecoded path, so %3F and %2F reach the target unchanged
        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
        query = request.scope.get("query_string", b"").decode("latin-1")
        target = f"http://{self.target_label}{path}"
        if query:
            target = f"{target}?{query}"
        return httpx.URL(target)

    async def forward(self, request: Request) -> Response:
        """Send the request upstream and stream the response back unbuffered."""
        url = self._upstream_url(request)
        content = None
        if request.method not in BODYLESS_METHODS:
            content = await request.body() or None

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self._upstream_headers(request, has_body=content is not None),
            content=content,
            timeout=self.settings.request_timeout_seconds,
        )
        logger.debug("Proxying to: %s with %ss timeout", url, self.settings.request_timeout_seconds)
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            msg = f"Request timeout after {self.settings.request_timeout_seconds:g} seconds"
            raise RequestTimeout(msg) from e
        except httpx.HTTPError as e:
            if is_connection_refused(e):
                msg = f"Target server refused connection ({e})"
                raise ConnectionRefused(msg) from e
            raise

        response = StreamingResponse(self._stream(upstream), status_code=upstream.status_code)
        response.raw_headers = [
            (name, value) for name, value in upstream.headers.raw if name.lower() not in HOP_BY_HOP_HEADERS
        ]
        return response

    async def _stream(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        # Once the first chunk is out the status is committed; errors just end the connection
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error("Proxy stream error: %s", e)
            raise
        finally:
            await upstream.aclose()

    def error_response(self, exc: Exception) -> JSONResponse:
        """Translate a failure into a JSON error response before any bytes are sent."""
        suggestion = None
        if isinstance(exc, ConnectionRefused):
            status_code = 502
            error = "Target server refused connection"
        elif isinstance(exc, ReadinessTimeout):
            status_code = 504
            error = "Server failed to become ready in time"
            suggestion = (
                "Try the request again with a longer timeout. "
                f"Current wake timeout: {self.settings.wake_timeout_seconds:g}s"
            )
        elif isinstance(exc, RequestTimeout):
            status_code = 504
            error = (
                f"Request timed out after {self.settings.request_timeout_seconds:g} seconds - "
                "this may be normal for long LLM responses"
            )
            suggestion = (
                "Try the request again with a longer timeout. "
                f"Current timeout: {self.settings.request_timeout_seconds:g}s"
            )
        elif isinstance(exc, WakeFailure):
            status_code = 500
            error = "Failed to wake target server"
        else:
            status_code = 500
            error = "Failed to process request through proxy"

        return JSONResponse(
            status_code=status_code,
            content={
                "error": error,
                "details": str(exc),
                "target": self.target_label,
                "health_check": self.health_check.describe(),
                "timestamp": utcnow().isoformat(),
                "suggestion": suggestion,
            },
        )
