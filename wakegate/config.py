import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from .models import AutoSleepPolicy, HealthCheckPolicy, TargetConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_PATH = Path(os.environ.get("WAKEGATE_CONFIG", Path(__file__).parent / ".." / "config.yaml"))


class ProxySettings(BaseModel):
    """Timeouts applied by the transparent proxy."""

    wake_timeout_seconds: float = Field(default=180, gt=0)  # Budget for wake + readiness wait
    request_timeout_seconds: float = Field(default=300, gt=0)  # Budget for the proxied request itself
    readiness_buffer_ms: int = Field(default=1000, ge=0)  # Settle delay before every forward


class MonitorSettings(BaseModel):
    """Polling cadence and probe timeouts of the server monitor."""

    interval_seconds: float = Field(default=5, gt=0)
    ping_timeout_seconds: int = Field(default=3, ge=1)
    control_timeout_seconds: float = Field(default=8, gt=0)
    port_timeout_seconds: float = Field(default=3, gt=0)


class SshSettings(BaseModel):
    """Credentials and timeouts for the remote command channel."""

    username: str = Field(default="sparkuser")
    client_key_path: str | None = Field(default=None)  # Falls back to the SSH_PRIVATE_KEY environment variable
    connect_timeout: float = Field(default=10, gt=0)
    command_timeout: float = Field(default=30, gt=0)


class SuspendSettings(BaseModel):
    """Commands used to re-arm Wake-on-LAN and suspend the target."""

    interface_command: str = Field(default="ip route show default | head -1 | sed 's/.*dev \\([^ ]*\\).*/\\1/'")
    suspend_command: str = Field(default="sudo ethtool -s {interface} wol g && sudo systemctl suspend")
    timeout_seconds: float = Field(default=15, gt=0)
    # Remote-exec error kinds that mean "the host went to sleep under us"
    expected_disconnect_kinds: list[str] = Field(default_factory=lambda: ["disconnected"])


class MetricsSettings(BaseModel):
    """Remote performance scraping over the command channel."""

    enabled: bool = Field(default=True)
    command_timeout_seconds: float = Field(default=3, gt=0)
    gpu_command_timeout_seconds: float = Field(default=5, gt=0)


class AppConfig(BaseModel):
    """Structure for validating the configuration file."""

    page_title: str = Field(default="Wakegate")
    log_level: str = Field(default="INFO")
    listen_host: str = Field(default="0.0.0.0")
    listen_port: int = Field(default=3000, ge=1, le=65535)
    target: TargetConfig = Field(default_factory=TargetConfig)
    health_check: HealthCheckPolicy = Field(default_factory=HealthCheckPolicy)
    auto_sleep: AutoSleepPolicy = Field(default_factory=AutoSleepPolicy)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    ssh: SshSettings = Field(default_factory=SshSettings)
    suspend: SuspendSettings = Field(default_factory=SuspendSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)


def load_config(path: Path = CONFIG_FILE_PATH) -> AppConfig:
    """Load and validate the configuration from config.yaml."""
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise FileNotFoundError(msg)

    with path.open() as f:
        config_data = yaml.safe_load(f) or {}

    return AppConfig(**config_data)


# Load config once on module import
try:
    settings = load_config()
except Exception as e:
    logger.exception("FATAL ERROR loading configuration: %s", e)
    # Provide defaults if loading fails
    settings = AppConfig(page_title="Wakegate (Error)")
