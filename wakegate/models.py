from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, field_validator

from .errors import ConfigValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusRange(BaseModel):
    """Inclusive range of HTTP status codes."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=100, le=599)
    end: int = Field(..., ge=100, le=599)

    def contains(self, code: int) -> bool:
        return self.start <= code <= self.end


def parse_success_codes(spec: str) -> tuple[StatusRange, ...]:
    """Parse a success-code list such as ``"200-299,404"`` into ranges."""
    ranges = []
    for raw_part in spec.split(","):
        part = raw_part.strip()
        if not part:
            continue
        start_str, sep, end_str = part.partition("-")
        try:
            start = int(start_str)
            end = int(end_str) if sep else start
        except ValueError:
            msg = f"Invalid status code range: {part!r}"
            raise ConfigValidationError(msg) from None
        if not 100 <= start <= end <= 599:
            msg = f"Status code range out of bounds: {part!r}"
            raise ConfigValidationError(msg)
        ranges.append(StatusRange(start=start, end=end))
    if not ranges:
        msg = f"No status codes in {spec!r}"
        raise ConfigValidationError(msg)
    return tuple(ranges)


class TargetConfig(BaseModel):
    """Network identity of the managed host."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(default="192.168.1.100")
    mac: str = Field(default="00:11:22:33:44:55")
    control_port: int = Field(default=22, ge=1, le=65535)  # SSH
    service_port: int = Field(default=11434, ge=1, le=65535)
    broadcast_prefix: int = Field(default=24, ge=0, le=32)  # Used to derive the subnet broadcast address


class HealthCheckPolicy(BaseModel):
    """How a single readiness check is performed and classified."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(default="/")
    method: str = Field(default="HEAD")
    timeout_seconds: float = Field(default=5.0, gt=0)
    success_codes: tuple[StatusRange, ...] = Field(default_factory=lambda: parse_success_codes("200-299,404"))

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("success_codes", mode="before")
    @classmethod
    def _parse_codes(cls, value):
        if isinstance(value, str):
            return parse_success_codes(value)
        return value

    def accepts(self, status_code: int) -> bool:
        return any(code_range.contains(status_code) for code_range in self.success_codes)

    def describe(self) -> str:
        return f"{self.method} {self.path}"


class AutoSleepPolicy(BaseModel):
    """Auto-sleep thresholds. Replaced wholesale on every update."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False)
    idle_minutes: int = Field(default=15, ge=1, le=120)  # Request-idle threshold
    monitor_gpu: bool = Field(default=False)
    gpu_threshold: float = Field(default=5.0, ge=0, le=100)  # Utilization percent
    gpu_idle_minutes: int = Field(default=5, ge=1, le=1440)


class AutoSleepState(AutoSleepPolicy):
    """Auto-sleep policy as observed by the last monitor cycle."""

    is_idle: bool = False
    time_until_sleep: float | None = None  # Seconds, None when no idle condition is armed

    @classmethod
    def from_policy(
        cls, policy: AutoSleepPolicy, is_idle: bool = False, time_until_sleep: float | None = None
    ) -> "AutoSleepState":
        return cls(**policy.model_dump(), is_idle=is_idle, time_until_sleep=time_until_sleep)


class ServiceFlags(BaseModel):
    """Reachability of the individual services on the target."""

    model_config = ConfigDict(frozen=True)

    liveness: bool = False
    control_channel: bool = False
    service_port_open: bool = False
    service_healthy: bool = False


class PerformanceSnapshot(BaseModel):
    """Resource usage of the target. None means unknown, never zero."""

    model_config = ConfigDict(frozen=True)

    response_time_ms: float | None = None
    cpu_usage: float | None = None
    memory_usage: float | None = None
    memory_used_gb: float | None = None
    memory_total_gb: float | None = None
    disk_usage: float | None = None
    gpu_usage: float | None = None
    vram_usage: float | None = None
    vram_used_gb: float | None = None
    vram_total_gb: float | None = None


class ServerStatus(BaseModel):
    """Snapshot published once per monitor cycle."""

    model_config = ConfigDict(frozen=True)

    is_online: bool = False
    last_seen_at: datetime | None = None
    services: ServiceFlags = Field(default_factory=ServiceFlags)
    performance: PerformanceSnapshot = Field(default_factory=PerformanceSnapshot)
    auto_sleep: AutoSleepState = Field(default_factory=AutoSleepState)
    observed_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def offline(
        cls, auto_sleep: AutoSleepState, last_seen_at: datetime | None = None, observed_at: datetime | None = None
    ) -> "ServerStatus":
        return cls(
            is_online=False,
            last_seen_at=last_seen_at,
            services=ServiceFlags(),
            performance=PerformanceSnapshot(),
            auto_sleep=auto_sleep,
            observed_at=observed_at or utcnow(),
        )


class PowerResult(BaseModel):
    """Outcome of a wake or suspend attempt."""

    success: bool
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class ReadinessResult(BaseModel):
    """Outcome of a single readiness check."""

    ready: bool
    status_code: int | None = None
    error: str | None = None
    error_kind: str | None = None  # "connection_refused", "timeout" or "network"

    def describe(self) -> str:
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return self.error or "unknown error"


class AutoSleepUpdate(BaseModel):
    """Body of POST /api/config/autosleep."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: StrictBool
    minutes: StrictInt
    monitor_gpu: StrictBool = Field(..., alias="monitorGpu")
    gpu_threshold: StrictInt | StrictFloat | None = Field(default=None, alias="gpuThreshold")
    gpu_idle_minutes: StrictInt | None = Field(default=None, alias="gpuIdleMinutes")
