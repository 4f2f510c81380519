import logging
import time
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.concurrency import asynccontextmanager
from fastapi.responses import JSONResponse, Response

from . import __version__, api, config
from .metrics import SshMetricsProvider
from .monitor import ServerMonitor
from .power import PowerController
from .proxy import ProxyGateway, is_internal_path
from .readiness import ReadinessProbe
from .ssh_utils import RemoteExecutor

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if level.upper() != "DEBUG":
        # Suppress per-request httpx/httpcore noise unless debugging
        for logger_name in ("httpx", "httpcore", "asyncssh"):
            logging.getLogger(logger_name).setLevel(logging.WARNING)


def create_app(
    settings: config.AppConfig | None = None,
    *,
    executor: RemoteExecutor | None = None,
    power: PowerController | None = None,
    probe: ReadinessProbe | None = None,
    monitor: ServerMonitor | None = None,
    gateway: ProxyGateway | None = None,
) -> FastAPI:
    """Application factory wiring the monitor, power controller and proxy gateway."""
    settings = settings or config.settings

    executor = executor or RemoteExecutor(
        host=settings.target.address,
        port=settings.target.control_port,
        username=settings.ssh.username,
        client_key_path=settings.ssh.client_key_path,
        connect_timeout=settings.ssh.connect_timeout,
        command_timeout=settings.ssh.command_timeout,
    )
    power = power or PowerController(settings.target, executor, settings.suspend)
    probe = probe or ReadinessProbe()
    monitor = monitor or ServerMonitor(
        settings.target,
        settings.health_check,
        settings.auto_sleep,
        power,
        probe,
        executor,
        metrics_provider=SshMetricsProvider(executor, settings.metrics),
        settings=settings.monitor,
    )
    gateway = gateway or ProxyGateway(
        settings.target,
        settings.health_check,
        settings.proxy,
        power,
        probe,
        monitor,
        ping_timeout=settings.monitor.ping_timeout_seconds,
    )
    status_cache = api.StatusCache()

    # --- Lifespan Event Handler ---
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Application startup: target %s:%d", settings.target.address, settings.target.service_port)
        logger.info("Health check: %s", settings.health_check.describe())
        unsubscribe = monitor.subscribe(status_cache.on_status)
        monitor.start()
        try:
            yield
        finally:
            logger.info("Application shutdown: Cleaning up...")
            unsubscribe()
            await monitor.stop()
            await gateway.aclose()
            await probe.aclose()

    app = FastAPI(
        title=settings.page_title,
        description="Keeps a compute host asleep while idle and wakes it on demand.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.power = power
    app.state.monitor = monitor
    app.state.gateway = gateway
    app.state.status_cache = status_cache
    app.state.started_at = time.monotonic()

    app.include_router(api.router)

    # Catch-all: everything that is not a wakegate endpoint goes to the target
    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, full_path: str) -> Response:
        if is_internal_path(request.url.path):
            return JSONResponse(status_code=405, content={"error": "Method not allowed"})
        return await request.app.state.gateway.handle(request)

    return app


def run() -> None:
    import uvicorn

    settings = config.settings
    configure_logging(settings.log_level)
    logger.info("Starting wakegate on %s:%d", settings.listen_host, settings.listen_port)
    uvicorn.run(create_app(settings), host=settings.listen_host, port=settings.listen_port)


if __name__ == "__main__":
    run()
