"""Tests for parsing remote command output into metrics."""

import pytest

from wakegate import parsers

PING_OUTPUT = """PING 192.168.1.100 (192.168.1.100) 56(84) bytes of data.
64 bytes from 192.168.1.100: icmp_seq=1 ttl=64 time=0.421 ms

--- 192.168.1.100 ping statistics ---
1 packets transmitted, 1 received, 0% packet loss, time 0ms
"""

MEMINFO = """MemTotal:       16777216 kB
MemFree:         1048576 kB
MemAvailable:    4194304 kB
"""

DISKSTATS = """   8       0 sda 400000 0 1000000 0 200000 0 1000000 0 0 0 0
   8       1 sda1 400000 0 9999999 0 200000 0 9999999 0 0 0 0
 259       0 nvme0n1 100 0 500000 0 100 0 500000 0 0 0 0
   7       0 loop0 10 0 99999999 0 0 0 99999999 0 0 0 0
"""


def test_parse_ping_time():
    assert parsers.parse_ping_time(PING_OUTPUT) == 0.4


def test_parse_ping_time_sub_millisecond_marker():
    assert parsers.parse_ping_time("64 bytes from host: icmp_seq=1 ttl=64 time<1 ms") == 1.0


def test_parse_ping_time_missing():
    assert parsers.parse_ping_time("Request timeout for icmp_seq 0") is None


def test_cpu_usage_between_samples():
    first = "cpu  100 0 100 800 0 0 0 0 0 0"
    second = "cpu  150 0 150 900 0 0 0 0 0 0"

    assert parsers.cpu_usage_between(first, second) == 50.0


def test_cpu_usage_counts_iowait_as_idle():
    first = "cpu  0 0 0 0 0 0 0 0"
    second = "cpu  25 0 0 50 25 0 0 0"

    assert parsers.cpu_usage_between(first, second) == 25.0


@pytest.mark.parametrize(
    ("first", "second"),
    [
        ("cpu  100 0 100 800", "cpu  100 0 100 800"),
        ("garbage", "cpu  150 0 150 900"),
        ("cpu  a b c d", "cpu  150 0 150 900"),
    ],
)
def test_cpu_usage_between_invalid(first, second):
    assert parsers.cpu_usage_between(first, second) is None


@pytest.mark.parametrize(
    ("output", "expected"),
    [("0.50 0.40 0.30 1/234 5678", 25.0), ("3.00 2.00 1.00 1/2 3", 100.0), ("", None), ("abc", None)],
)
def test_cpu_usage_from_loadavg(output, expected):
    assert parsers.cpu_usage_from_loadavg(output) == expected


def test_parse_meminfo():
    result = parsers.parse_meminfo(MEMINFO)

    assert result == {"memory_usage": 75.0, "memory_used_gb": 12.0, "memory_total_gb": 16.0}


def test_parse_meminfo_without_available():
    assert parsers.parse_meminfo("MemTotal: 1000 kB\nMemFree: 10 kB") is None


def test_parse_diskstats_only_counts_whole_disks():
    # sda: 1M + 1M sectors, nvme0n1: 0.5M + 0.5M sectors; partitions and loop devices ignored
    assert parsers.parse_diskstats(DISKSTATS) == 3.0


def test_parse_diskstats_no_disks():
    assert parsers.parse_diskstats("   7       0 loop0 10 0 5 0 0 0 5 0 0 0 0") is None


@pytest.mark.parametrize(("output", "expected"), [("37\n", 37.0), ("0", 0.0), ("[N/A]", None), ("", None), ("150", None)])
def test_parse_gpu_utilization(output, expected):
    assert parsers.parse_gpu_utilization(output) == expected


def test_parse_vram():
    result = parsers.parse_vram("6144, 24576\n1024, 24576\n")

    assert result == {"vram_usage": 25.0, "vram_used_gb": 6.0, "vram_total_gb": 24.0}


@pytest.mark.parametrize("output", ["", "6144", "a, b", "100, 0", "300, 200"])
def test_parse_vram_invalid(output):
    assert parsers.parse_vram(output) is None
