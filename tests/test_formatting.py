"""Tests for formatting utilities."""

import pytest

from taskwarden.formatting import (
    filter_processes,
    format_age,
    format_bytes,
    format_cpu_info,
    format_percent,
    load_bar,
    sort_processes,
    system_summary,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        (0, "0 B"),
        (512, "512 B"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
        (3.2 * 1024**3, "3.2 GB"),
        (-10, "0 B"),
    ],
)
def test_format_bytes(value, expected):
    assert format_bytes(value) == expected


def test_format_bytes_caps_at_largest_unit():
    assert format_bytes(2048 * 1024**4) == "2048.0 TB"


def test_format_percent():
    assert format_percent(42.71) == "42.7%"
    assert format_percent("60.0") == "60.0%"
    assert format_percent(None) == "-"
    assert format_percent("n/a") == "-"


def test_format_age():
    assert format_age(0) == "never"
    assert format_age(100.0, now=102.4) == "2s ago"
    assert format_age(100.0, now=100.0 + 180) == "3m ago"
    assert format_age(100.0, now=100.0 + 5400) == "1.5h ago"
    # Clock skew never yields a negative age
    assert format_age(200.0, now=100.0) == "0s ago"


def test_load_bar():
    assert load_bar(0) == "░" * 10
    assert load_bar(100) == "█" * 10
    assert load_bar(50, width=4) == "██░░"
    assert load_bar(250) == "█" * 10
    assert load_bar(-5) == "░" * 10


def test_system_summary():
    snapshot = {
        "cpu": {"load": 42.7, "cores": [{"load": 10.0}, {"load": 95.0}]},
        "memory": {"total": 1000, "used": 600, "free": 400, "used_percent": "60.0"},
    }
    assert system_summary(snapshot) == "CPU 42.7% (2 cores)  MEM 600 B / 1000 B (60.0%)"


def test_system_summary_placeholder():
    assert system_summary({}) == "CPU - (0 cores)  MEM 0 B / 0 B (-)"


@pytest.mark.parametrize(
    "cpu,expected",
    [
        (
            {"manufacturer": "Intel", "brand": "Intel(R) Core(TM) i7", "speed": 2.6,
             "temperature": 54.0},
            "Intel(R) Core(TM) i7 · 2.60 GHz · 54.0°C",
        ),
        ({"manufacturer": "Apple", "brand": "M2", "speed": 0.0, "temperature": None}, "Apple M2"),
        ({"manufacturer": "AMD", "brand": "unknown", "speed": 3.8}, "AMD · 3.80 GHz"),
        ({"load": 12.0}, ""),
    ],  # fmt: skip
)
def test_format_cpu_info(cpu, expected):
    assert format_cpu_info(cpu) == expected


ROWS = [
    {"pid": 300, "name": "postgres", "cpu": 30.0, "memory": 4.0, "user": "pg"},
    {"pid": 42, "name": "Python", "cpu": 12.0, "memory": 9.5, "user": "alice"},
    {"pid": 1200, "name": "nginx", "cpu": 0.5, "memory": 0.2, "user": "www"},
]


@pytest.mark.parametrize(
    "query,pids",
    [("", [300, 42, 1200]), ("PYTH", [42]), ("30", [300]), ("alice", [42]), ("zzz", [])],
)
def test_filter_processes(query, pids):
    assert [p["pid"] for p in filter_processes(ROWS, query)] == pids


@pytest.mark.parametrize(
    "field,descending,pids",
    [
        ("cpu", True, [300, 42, 1200]),
        ("cpu", False, [1200, 42, 300]),
        ("pid", False, [42, 300, 1200]),
        ("memory", True, [42, 300, 1200]),
        ("name", False, [1200, 300, 42]),
        ("user", True, [1200, 300, 42]),
    ],
)
def test_sort_processes(field, descending, pids):
    assert [p["pid"] for p in sort_processes(ROWS, field, descending=descending)] == pids


def test_sort_processes_rejects_unknown_field():
    with pytest.raises(ValueError, match="cannot sort on 'state'"):
        sort_processes(ROWS, "state")
