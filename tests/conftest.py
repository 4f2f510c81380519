"""Shared fixtures: fake clocks and mocked collaborators, no network access."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from wakegate.models import AutoSleepPolicy, HealthCheckPolicy, PowerResult, ReadinessResult, TargetConfig
from wakegate.ssh_utils import ExecResult


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ZeroJitter:
    def uniform(self, a: float, b: float) -> float:
        return a


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def target() -> TargetConfig:
    return TargetConfig(address="192.168.1.100", mac="00:11:22:33:44:55", control_port=22, service_port=11434)


@pytest.fixture
def health_check() -> HealthCheckPolicy:
    return HealthCheckPolicy(path="/", method="HEAD", timeout_seconds=5, success_codes="200-299,404")


@pytest.fixture
def auto_sleep() -> AutoSleepPolicy:
    return AutoSleepPolicy(enabled=True, idle_minutes=5, monitor_gpu=False, gpu_threshold=5, gpu_idle_minutes=5)


@pytest.fixture
def executor() -> MagicMock:
    """RemoteExecutor whose control-channel test always succeeds."""
    mock = MagicMock()
    mock.execute = AsyncMock(return_value=ExecResult(exit_status=0, stdout="ssh_test_successful\n"))
    return mock


@pytest.fixture
def power() -> MagicMock:
    mock = MagicMock()
    mock.wake = AsyncMock(return_value=PowerResult(success=True, message="woken"))
    mock.suspend = AsyncMock(return_value=PowerResult(success=True, message="suspended"))
    return mock


@pytest.fixture
def probe() -> MagicMock:
    mock = MagicMock()
    mock.check = AsyncMock(return_value=ReadinessResult(ready=True, status_code=200))
    mock.wait_until_ready = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    return mock
