import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, ValidationError

from . import probes
from .config import MonitorSettings
from .errors import ConfigValidationError
from .metrics import MetricsProvider
from .models import (
    AutoSleepPolicy,
    AutoSleepState,
    HealthCheckPolicy,
    PerformanceSnapshot,
    ReadinessResult,
    ServerStatus,
    ServiceFlags,
    TargetConfig,
    utcnow,
)
from .power import PowerController
from .readiness import ReadinessProbe
from .ssh_utils import RemoteExecutor

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_TEST_CMD = "echo 'ssh_test_successful'"
CONTROL_CHANNEL_TEST_OUTPUT = "ssh_test_successful"

StatusCallback = Callable[[ServerStatus], None]


class IntervalScheduler:
    """Runs ``job`` every ``interval`` seconds, skipping ticks while a run is in flight.

    Ticks are never queued: if the previous run has not completed when the
    next tick fires, that tick is dropped and counted in ``skipped_ticks``.
    """

    def __init__(self, interval: float, job: Callable[[], Awaitable[object]], name: str = "interval-scheduler"):
        self.interval = interval
        self.job = job
        self.name = name
        self.skipped_ticks = 0
        self._loop_task: asyncio.Task | None = None
        self._current: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def tick(self) -> bool:
        """Start one run unless the previous one is still in progress."""
        if self._current is not None and not self._current.done():
            self.skipped_ticks += 1
            logger.debug("%s: previous run still in progress, skipping tick", self.name)
            return False
        self._current = asyncio.create_task(self._run_job(), name=f"{self.name}-run")
        return True

    async def _run_job(self) -> None:
        try:
            await self.job()
        except Exception:
            logger.exception("%s: scheduled run failed", self.name)

    async def _loop(self) -> None:
        # Run immediately, then every interval
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        for task in (self._loop_task, self._current):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._current = None


class IdleTimers(BaseModel):
    """Monotonic timestamps driving the auto-sleep decision."""

    last_activity_at: float
    gpu_idle_since: float | None = None


class IdleDecision(BaseModel):
    """Result of evaluating the idle conditions for one cycle."""

    reason: str | None = None  # "idle" or "gpu-idle" when a condition fired
    detail: str | None = None
    time_until_sleep: float | None = None
    gpu_idle_since: float | None = None

    @property
    def should_sleep(self) -> bool:
        return self.reason is not None


def evaluate_idle(
    policy: AutoSleepPolicy, timers: IdleTimers, gpu_usage: float | None, now: float
) -> IdleDecision:
    """Decide whether the target should be suspended.

    The request-idle condition is always armed. The GPU-idle condition is armed
    only while GPU monitoring is enabled and a utilization reading below the
    threshold is present; any other reading disarms it.
    """
    reason = None
    detail = None
    remaining: list[float] = []

    request_window = policy.idle_minutes * 60
    since_activity = now - timers.last_activity_at
    if since_activity >= request_window:
        reason = "idle"
        detail = f"No requests for over {policy.idle_minutes} minutes."
        remaining.append(0.0)
    else:
        remaining.append(request_window - since_activity)

    gpu_idle_since = None
    if policy.monitor_gpu and gpu_usage is not None and gpu_usage < policy.gpu_threshold:
        gpu_idle_since = timers.gpu_idle_since if timers.gpu_idle_since is not None else now
        gpu_window = policy.gpu_idle_minutes * 60
        gpu_elapsed = now - gpu_idle_since
        if gpu_elapsed >= gpu_window:
            if reason is None:
                reason = "gpu-idle"
                detail = f"GPU idle for over {policy.gpu_idle_minutes} minutes."
            remaining.append(0.0)
        else:
            remaining.append(gpu_window - gpu_elapsed)

    return IdleDecision(
        reason=reason,
        detail=detail,
        time_until_sleep=min(remaining) if remaining else None,
        gpu_idle_since=gpu_idle_since,
    )


class ServerMonitor:
    """Periodic liveness, service and idle monitoring of the target host.

    Each cycle builds a fresh ``ServerStatus`` and publishes it to every
    subscriber; the published snapshot is replaced wholesale, never mutated.
    Only one cycle runs at a time.
    """

    def __init__(
        self,
        target: TargetConfig,
        health_check: HealthCheckPolicy,
        auto_sleep: AutoSleepPolicy,
        power: PowerController,
        probe: ReadinessProbe,
        executor: RemoteExecutor,
        metrics_provider: MetricsProvider | None = None,
        settings: MonitorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        ping: Callable[[str, int], Awaitable[tuple[bool, float | None]]] = probes.ping_host,
        port_check: Callable[[str, int, float], Awaitable[bool]] = probes.check_port_open,
    ):
        self.target = target
        self.health_check = health_check
        self.power = power
        self.probe = probe
        self.executor = executor
        self.metrics_provider = metrics_provider
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self._ping = ping
        self._port_check = port_check

        self._policy = auto_sleep
        self._timers = IdleTimers(last_activity_at=clock())
        self._status = ServerStatus(auto_sleep=AutoSleepState.from_policy(auto_sleep))
        self._subscribers: list[StatusCallback] = []
        self._cycle_lock = asyncio.Lock()
        self._scheduler = IntervalScheduler(self.settings.interval_seconds, self.run_cycle, name="server-monitor")

    # --- Public surface ---

    @property
    def policy(self) -> AutoSleepPolicy:
        return self._policy

    @property
    def timers(self) -> IdleTimers:
        return self._timers.model_copy()

    @property
    def status(self) -> ServerStatus:
        """Latest published status, with auto-sleep fields reflecting the current policy."""
        current = self._status
        auto_sleep = AutoSleepState.from_policy(
            self._policy,
            is_idle=current.auto_sleep.is_idle,
            time_until_sleep=current.auto_sleep.time_until_sleep,
        )
        return current.model_copy(update={"auto_sleep": auto_sleep})

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status-changed observer; returns a function that removes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def record_activity(self) -> None:
        self._timers.last_activity_at = self._clock()
        logger.debug("Activity recorded - resetting idle timer")

    def update_auto_sleep(
        self,
        enabled: bool,
        minutes: int,
        monitor_gpu: bool,
        gpu_threshold: float | None = None,
        gpu_idle_minutes: int | None = None,
    ) -> AutoSleepPolicy:
        """Validate and commit a new auto-sleep policy; the old one is kept on error."""
        if not 1 <= minutes <= 120:
            msg = "Minutes must be between 1 and 120"
            raise ConfigValidationError(msg)

        changes = {"enabled": enabled, "idle_minutes": minutes, "monitor_gpu": monitor_gpu}
        if gpu_threshold is not None:
            changes["gpu_threshold"] = gpu_threshold
        if gpu_idle_minutes is not None:
            changes["gpu_idle_minutes"] = gpu_idle_minutes
        try:
            new_policy = AutoSleepPolicy.model_validate({**self._policy.model_dump(), **changes})
        except ValidationError as e:
            msg = f"Invalid auto-sleep configuration: {e.errors()[0]['msg']}"
            raise ConfigValidationError(msg) from e

        self._policy = new_policy
        logger.info("Updating auto-sleep config: %s", new_policy.model_dump())
        return new_policy

    def start(self) -> None:
        logger.info("Starting server monitoring for %s", self.target.address)
        self._scheduler.start()

    async def stop(self) -> None:
        await self._scheduler.stop()
        logger.info("Server monitoring stopped")

    # --- Cycle ---

    async def run_cycle(self) -> ServerStatus | None:
        """Run one monitoring cycle; returns None if a cycle is already in flight."""
        if self._cycle_lock.locked():
            logger.debug("Monitor cycle already running, skipping")
            return None
        async with self._cycle_lock:
            try:
                status = await self._perform_cycle()
            except Exception:
                logger.exception("Health check error")
                return None
            self._publish(status)
            return status

    async def _perform_cycle(self) -> ServerStatus:
        observed_at = utcnow()
        policy = self._policy

        is_online, response_time = await self._check_liveness()
        if is_online != self._status.is_online:
            logger.info("Server %s status changed: %s", self.target.address, "ONLINE" if is_online else "OFFLINE")

        if not is_online:
            self._reset_idle_timers()
            return ServerStatus.offline(
                AutoSleepState.from_policy(policy),
                last_seen_at=self._status.last_seen_at,
                observed_at=observed_at,
            )

        services = await self._check_services()
        performance = PerformanceSnapshot(response_time_ms=response_time)
        if services.control_channel:
            performance = await self._collect_performance(response_time)

        auto_sleep = await self._handle_auto_sleep(policy, performance.gpu_usage)
        return ServerStatus(
            is_online=True,
            last_seen_at=observed_at,
            services=services,
            performance=performance,
            auto_sleep=auto_sleep,
            observed_at=observed_at,
        )

    async def _check_liveness(self) -> tuple[bool, float | None]:
        try:
            return await self._ping(self.target.address, self.settings.ping_timeout_seconds)
        except Exception:
            logger.exception("Liveness probe failed for %s", self.target.address)
            return False, None

    async def _check_control_channel(self) -> bool:
        result = await self.executor.execute(CONTROL_CHANNEL_TEST_CMD, timeout=self.settings.control_timeout_seconds)
        if not result.ok:
            logger.warning("Control channel check failed: %s", result.error)
            return False
        return result.stdout.strip() == CONTROL_CHANNEL_TEST_OUTPUT

    async def _check_services(self) -> ServiceFlags:
        control, port_open, health = await asyncio.gather(
            self._check_control_channel(),
            self._port_check(self.target.address, self.target.service_port, self.settings.port_timeout_seconds),
            self.probe.check(self.target.address, self.target.service_port, self.health_check),
            return_exceptions=True,
        )
        for name, result in (("control channel", control), ("service port", port_open), ("health", health)):
            if isinstance(result, Exception):
                logger.error("Error during %s check: %r", name, result)

        return ServiceFlags(
            liveness=True,
            control_channel=control is True,
            service_port_open=port_open is True,
            service_healthy=isinstance(health, ReadinessResult) and health.ready,
        )

    async def _collect_performance(self, response_time: float | None) -> PerformanceSnapshot:
        if self.metrics_provider is None:
            return PerformanceSnapshot(response_time_ms=response_time)
        try:
            snapshot = await self.metrics_provider.snapshot()
        except Exception:
            logger.exception("Performance metrics collection failed")
            snapshot = None
        if snapshot is None:
            return PerformanceSnapshot(response_time_ms=response_time)
        return snapshot.model_copy(update={"response_time_ms": response_time})

    def _reset_idle_timers(self) -> None:
        self._timers = IdleTimers(last_activity_at=self._clock(), gpu_idle_since=None)

    async def _handle_auto_sleep(self, policy: AutoSleepPolicy, gpu_usage: float | None) -> AutoSleepState:
        if not policy.enabled:
            self._reset_idle_timers()
            return AutoSleepState.from_policy(policy)

        decision = evaluate_idle(policy, self._timers, gpu_usage, self._clock())
        if self._timers.gpu_idle_since is None and decision.gpu_idle_since is not None:
            logger.debug("GPU idle timer started")
        elif self._timers.gpu_idle_since is not None and decision.gpu_idle_since is None:
            logger.debug("GPU no longer idle - resetting timer")
        self._timers.gpu_idle_since = decision.gpu_idle_since

        state = AutoSleepState.from_policy(
            policy, is_idle=decision.time_until_sleep is not None, time_until_sleep=decision.time_until_sleep
        )
        if decision.should_sleep:
            logger.info("Auto-sleep triggered. Reason: %s Putting server to sleep.", decision.detail)
            result = await self.power.suspend()
            if result.success:
                self._reset_idle_timers()
            else:
                logger.warning("Auto-sleep suspend failed, will re-evaluate next cycle: %s", result.message)
        return state

    def _publish(self, status: ServerStatus) -> None:
        self._status = status
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("Status subscriber %r failed", callback)
