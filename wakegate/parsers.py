import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

DISK_DEVICE_RE = re.compile(r"^(sd[a-z]|nvme\d+n\d+|vd[a-z])$")


def parse_ping_time(ping_output: str) -> float | None:
    """Parse the round-trip time from `ping -c 1` output."""
    # Example line: 64 bytes from 192.168.1.100: icmp_seq=1 ttl=64 time=0.421 ms
    match = re.search(r"time[=<]\s*(\d+(?:[.,]\d+)?)\s*ms", ping_output)
    if not match:
        return None
    return round(float(match.group(1).replace(",", ".")), 1)


def parse_cpu_stat_line(stat_line: str) -> tuple[int, int] | None:
    """Parse the aggregate `cpu` line of /proc/stat into (total, idle) jiffies."""
    # Example line: cpu  10132153 290696 3084719 46828483 16683 0 25195 0 175628 0
    fields = stat_line.strip().split()
    if len(fields) < 5 or fields[0] != "cpu":
        logger.warning("Could not find cpu line in /proc/stat output: %s", stat_line[:200])
        return None
    try:
        values = [int(v) for v in fields[1:9]]
    except ValueError:
        logger.warning("Non-numeric /proc/stat values: %s", stat_line[:200])
        return None
    values += [0] * (8 - len(values))
    user, nice, system, idle, iowait, irq, softirq, steal = values
    total_idle = idle + iowait
    total = total_idle + user + nice + system + irq + softirq + steal
    return total, total_idle


def cpu_usage_between(first_line: str, second_line: str) -> float | None:
    """CPU usage percentage between two /proc/stat samples."""
    first = parse_cpu_stat_line(first_line)
    second = parse_cpu_stat_line(second_line)
    if first is None or second is None:
        return None
    total_diff = second[0] - first[0]
    idle_diff = second[1] - first[1]
    if total_diff <= 0:
        return None
    usage = (total_diff - idle_diff) / total_diff * 100
    if not 0 <= usage <= 100:
        return None
    return round(usage, 1)


def cpu_usage_from_loadavg(loadavg_output: str) -> float | None:
    """Rough CPU estimate from the 1-minute load average, capped at 100."""
    try:
        load = float(loadavg_output.split()[0])
    except (ValueError, IndexError):
        logger.warning("Could not parse /proc/loadavg output: %s", loadavg_output[:200])
        return None
    if load < 0:
        return None
    return min(round(load * 50, 1), 100.0)


def parse_meminfo(meminfo_output: str) -> dict[str, Any] | None:
    """Parse /proc/meminfo into usage percent and used/total GiB."""
    # Example lines: MemTotal:       65856508 kB / MemAvailable:   51234560 kB
    values = {}
    for line in meminfo_output.splitlines():
        match = re.match(r"^(MemTotal|MemFree|MemAvailable):\s+(\d+)\s*kB", line.strip())
        if match:
            values[match.group(1)] = int(match.group(2)) * 1024

    total = values.get("MemTotal", 0)
    available = values.get("MemAvailable")
    if total <= 0 or available is None:
        logger.warning("Could not find MemTotal/MemAvailable in meminfo output: %s", meminfo_output[:200])
        return None

    used = total - available
    gib = 1024**3
    return {
        "memory_usage": round(used / total * 100, 1),
        "memory_used_gb": round(used / gib, 1),
        "memory_total_gb": round(total / gib, 1),
    }


def parse_diskstats(diskstats_output: str) -> float | None:
    """Disk activity indicator from /proc/diskstats of physical disks, capped at 100."""
    total_reads = 0
    total_writes = 0
    matched = False
    for line in diskstats_output.splitlines():
        parts = line.split()
        if len(parts) < 11 or not DISK_DEVICE_RE.match(parts[2]):
            continue
        try:
            total_reads += int(parts[5])
            total_writes += int(parts[9])
        except ValueError:
            logger.warning("Skipping malformed diskstats line: %s", line)
            continue
        matched = True
    if not matched:
        return None
    # Sectors read + written in millions
    return round(min((total_reads + total_writes) / 1_000_000, 100.0), 1)


def parse_gpu_utilization(smi_output: str) -> float | None:
    """Parse `nvidia-smi --query-gpu=utilization.gpu` output (first GPU)."""
    lines = smi_output.strip().splitlines()
    if not lines:
        return None
    try:
        value = float(lines[0].strip())
    except ValueError:
        logger.debug("GPU utilization not numeric: %r", lines[0])
        return None
    if not 0 <= value <= 100:
        return None
    return value


def parse_vram(smi_output: str) -> dict[str, Any] | None:
    """Parse `nvidia-smi --query-gpu=memory.used,memory.total` output (first GPU, MiB)."""
    lines = smi_output.strip().splitlines()
    if not lines:
        return None
    values = [v.strip() for v in lines[0].split(",")]
    if len(values) != 2:
        logger.debug("Unexpected VRAM output format: %r", lines[0])
        return None
    try:
        used_mib, total_mib = float(values[0]), float(values[1])
    except ValueError:
        logger.debug("VRAM values not numeric: %r", lines[0])
        return None
    if total_mib <= 0:
        return None
    usage = used_mib / total_mib * 100
    if not 0 <= usage <= 100:
        return None
    return {
        "vram_usage": round(usage, 1),
        "vram_used_gb": round(used_mib / 1024, 1),
        "vram_total_gb": round(total_mib / 1024, 1),
    }
