import asyncio
import logging
import time
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from . import __version__, models
from .errors import ConfigValidationError

logger = logging.getLogger(__name__)
router = APIRouter()

CLIENT_QUEUE_SIZE = 16


class StatusCache:
    """Fans published monitor statuses out to connected SSE clients."""

    def __init__(self):
        self.latest_status: models.ServerStatus | None = None
        self.connected_clients: set[asyncio.Queue] = set()

    def get_latest_status_message(self) -> dict | None:
        if self.latest_status is not None:
            return {"event": "statusUpdate", "data": self.latest_status.model_dump_json()}
        return None

    def add_client(self, queue: asyncio.Queue):
        self.connected_clients.add(queue)
        logger.info("Client connected to SSE. Added to set. Total clients: %d", len(self.connected_clients))

    def remove_client(self, queue: asyncio.Queue):
        if queue in self.connected_clients:
            self.connected_clients.remove(queue)
            logger.info(
                "Client disconnected from SSE. Removed from set. Total clients: %d", len(self.connected_clients)
            )

    def on_status(self, status: models.ServerStatus):
        """Monitor subscriber: remember the status and queue it for every client."""
        self.latest_status = status
        message = self.get_latest_status_message()
        # Iterate over a copy of the set in case it's modified during iteration
        for client_queue in list(self.connected_clients):
            if client_queue.full():
                # Slow client: drop its oldest update so the newest one always gets through
                client_queue.get_nowait()
            client_queue.put_nowait(message)


@router.get("/api/status", response_model=models.ServerStatus)
async def get_status(request: Request) -> models.ServerStatus:
    """Latest status published by the monitor."""
    return request.app.state.monitor.status


@router.post("/api/wake", response_model=models.PowerResult)
async def wake(request: Request):
    try:
        result = await request.app.state.power.wake()
    except Exception as e:
        logger.exception("Wake API error")
        return JSONResponse(
            status_code=500,
            content=models.PowerResult(success=False, message=f"Failed to wake server: {e}").model_dump(mode="json"),
        )
    logger.info("Wake command result: %s - %s", "SUCCESS" if result.success else "FAILED", result.message)
    return result


@router.post("/api/sleep", response_model=models.PowerResult)
async def sleep(request: Request):
    try:
        result = await request.app.state.power.suspend()
    except Exception as e:
        logger.exception("Sleep API error")
        return JSONResponse(
            status_code=500,
            content=models.PowerResult(success=False, message=f"Failed to sleep server: {e}").model_dump(mode="json"),
        )
    logger.info("Sleep command result: %s - %s", "SUCCESS" if result.success else "FAILED", result.message)
    return result


@router.get("/api/config")
async def get_config(request: Request) -> dict:
    """Target, health check, auto-sleep and proxy configuration (read-only)."""
    settings = request.app.state.settings
    return {
        "target": settings.target.model_dump(mode="json"),
        "health_check": settings.health_check.model_dump(mode="json"),
        "auto_sleep": request.app.state.monitor.policy.model_dump(mode="json"),
        "proxy": settings.proxy.model_dump(mode="json"),
    }


@router.post("/api/config/autosleep")
async def update_autosleep(request: Request, update: models.AutoSleepUpdate):
    try:
        policy = request.app.state.monitor.update_auto_sleep(
            enabled=update.enabled,
            minutes=update.minutes,
            monitor_gpu=update.monitor_gpu,
            gpu_threshold=update.gpu_threshold,
            gpu_idle_minutes=update.gpu_idle_minutes,
        )
    except ConfigValidationError as e:
        logger.warning("Rejected auto-sleep configuration: %s", e)
        return JSONResponse(status_code=400, content={"error": str(e)})

    logger.info(
        "Auto-sleep configuration updated: enabled=%s, minutes=%d, monitorGpu=%s",
        policy.enabled,
        policy.idle_minutes,
        policy.monitor_gpu,
    )
    return {
        "message": "Configuration updated successfully.",
        "config": policy.model_dump(mode="json"),
        "timestamp": models.utcnow().isoformat(),
    }


@router.get("/health")
async def health(request: Request) -> dict:
    """Liveness of the gateway process itself, not of the target."""
    settings = request.app.state.settings
    return {
        "status": "healthy",
        "timestamp": models.utcnow().isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 1),
        "version": __version__,
        "target": {
            "address": settings.target.address,
            "port": settings.target.service_port,
            "health_check": settings.health_check.describe(),
        },
    }


@router.get("/api/status_sse")
async def get_status_sse(request: Request) -> EventSourceResponse:
    """SSE endpoint streaming one status update per monitor cycle."""
    status_cache: StatusCache = request.app.state.status_cache
    client_queue: asyncio.Queue = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
    status_cache.add_client(client_queue)

    # Send the cached status to the new client first if available
    initial_message = status_cache.get_latest_status_message()
    if initial_message:
        client_queue.put_nowait(initial_message)

    async def event_publisher() -> AsyncGenerator[dict, None]:
        try:
            while True:
                message = await client_queue.get()
                yield message
        except asyncio.CancelledError:
            # Raised when the client disconnects
            logger.info("Client %s cancelled.", id(client_queue))
            raise
        finally:
            status_cache.remove_client(client_queue)

    return EventSourceResponse(event_publisher(), ping=15)
