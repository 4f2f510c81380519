import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from . import parsers
from .config import MetricsSettings
from .models import PerformanceSnapshot
from .ssh_utils import RemoteExecutor

logger = logging.getLogger(__name__)

# --- Constants for Commands ---
CPU_STAT_CMD = "grep '^cpu ' /proc/stat"
LOADAVG_CMD = "cat /proc/loadavg"
MEMINFO_CMD = "head -3 /proc/meminfo"
DISKSTATS_CMD = "cat /proc/diskstats"
# nvidia-smi is known to hang; stuck instances are killed before each query
KILL_STUCK_SMI_CMD = "pkill -f 'nvidia-smi' 2>/dev/null || true"
GPU_UTIL_CMD = "timeout 3 nvidia-smi --query-gpu=utilization.gpu --format=csv,noheader,nounits 2>/dev/null | head -1"
VRAM_CMD = "timeout 3 nvidia-smi --query-gpu=memory.used,memory.total --format=csv,noheader,nounits 2>/dev/null | head -1"
CPU_SAMPLE_INTERVAL_SECONDS = 1.0


class MetricsProvider(Protocol):
    async def snapshot(self) -> PerformanceSnapshot | None: ...


class SshMetricsProvider:
    """Scrapes CPU, memory, disk and GPU usage from the target over SSH.

    Each metric group is collected independently; a failing group leaves its
    fields unknown instead of failing the whole snapshot.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        settings: MetricsSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.executor = executor
        self.settings = settings or MetricsSettings()
        self._sleep = sleep

    async def _run(self, command: str, timeout: float | None = None) -> str | None:
        result = await self.executor.execute(command, timeout=timeout or self.settings.command_timeout_seconds)
        if not result.ok:
            logger.debug("Metrics command %r failed: %s", command, result.error)
            return None
        return result.stdout

    async def get_cpu_usage(self) -> dict[str, Any]:
        first = await self._run(CPU_STAT_CMD)
        if first is not None:
            await self._sleep(CPU_SAMPLE_INTERVAL_SECONDS)
            second = await self._run(CPU_STAT_CMD)
            if second is not None:
                usage = parsers.cpu_usage_between(first, second)
                if usage is not None:
                    return {"cpu_usage": usage}

        # Fallback if the /proc/stat delta could not be computed
        loadavg = await self._run(LOADAVG_CMD)
        if loadavg is None:
            return {}
        usage = parsers.cpu_usage_from_loadavg(loadavg)
        return {"cpu_usage": usage} if usage is not None else {}

    async def get_memory_usage(self) -> dict[str, Any]:
        output = await self._run(MEMINFO_CMD)
        if output is None:
            return {}
        return parsers.parse_meminfo(output) or {}

    async def get_disk_usage(self) -> dict[str, Any]:
        output = await self._run(DISKSTATS_CMD)
        if output is None:
            return {}
        usage = parsers.parse_diskstats(output)
        return {"disk_usage": usage} if usage is not None else {}

    async def get_gpu_usage(self) -> dict[str, Any]:
        gpu_timeout = self.settings.gpu_command_timeout_seconds
        await self._run(KILL_STUCK_SMI_CMD, timeout=2)

        data: dict[str, Any] = {}
        util_output = await self._run(GPU_UTIL_CMD, timeout=gpu_timeout)
        if util_output is not None:
            utilization = parsers.parse_gpu_utilization(util_output)
            if utilization is not None:
                data["gpu_usage"] = utilization

        vram_output = await self._run(VRAM_CMD, timeout=gpu_timeout)
        if vram_output is not None:
            data.update(parsers.parse_vram(vram_output) or {})
        return data

    async def snapshot(self) -> PerformanceSnapshot | None:
        """Collect every metric group; None if nothing at all could be read."""
        if not self.settings.enabled:
            return None

        groups = {
            "cpu": self.get_cpu_usage(),
            "memory": self.get_memory_usage(),
            "disk": self.get_disk_usage(),
            "gpu": self.get_gpu_usage(),
        }
        results = await asyncio.gather(*groups.values(), return_exceptions=True)

        fields: dict[str, Any] = {}
        for name, result in zip(groups, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Error collecting %s metrics: %r", name, result)
            elif isinstance(result, dict):
                fields.update(result)

        if not fields:
            logger.debug("No performance metrics could be collected")
            return None
        logger.debug("Performance metrics collected: %s", fields)
        return PerformanceSnapshot(**fields)
