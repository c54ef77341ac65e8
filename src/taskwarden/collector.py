"""System and process data collector using psutil.

Returns raw records (plain dicts) that the fallback chain turns into
snapshots. Calls are blocking; the chain runs them in a worker thread.
"""

import os
import platform
import time
from pathlib import Path
from typing import Any

import psutil
import structlog

log = structlog.get_logger()

# Attributes fetched per process in one pass
_PROCESS_ATTRS = ["pid", "name", "username", "cpu_percent", "memory_percent"]

# Sensor chips that report the CPU package, in order of preference
_CPU_SENSORS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")

_VENDORS = {
    "genuineintel": "Intel",
    "intel": "Intel",
    "authenticamd": "AMD",
    "amd": "AMD",
    "apple": "Apple",
    "arm": "ARM",
    "qualcomm": "Qualcomm",
}


class CollectorUnavailable(Exception):
    """The primary metrics source could not produce a sample."""


class SystemCollector:
    """Collects raw CPU/memory samples and process tables from psutil.

    psutil reports CPU percentages relative to the previous call, so the
    constructor primes the counters; the first real sample covers the time
    since construction.
    """

    def __init__(self) -> None:
        self._own_pid = os.getpid()
        self._manufacturer, self._brand = cpu_identity()
        try:
            psutil.cpu_percent(percpu=True)
        except (OSError, RuntimeError) as e:
            log.warning("collector_prime_failed", error=str(e))

    def collect_system(self) -> dict[str, Any]:
        """Return a raw CPU and memory sample.

        Raises:
            CollectorUnavailable: If psutil cannot read the counters.
        """
        try:
            per_core = psutil.cpu_percent(percpu=True)
            mem = psutil.virtual_memory()
        except (OSError, RuntimeError, psutil.Error) as e:
            raise CollectorUnavailable(f"system sample failed: {e}") from e

        aggregate = sum(per_core) / len(per_core) if per_core else 0.0
        return {
            "cpu": aggregate,
            "cores": [{"load": load} for load in per_core],
            # "available" is what the viewer thinks of as free memory
            "mem": {"total": mem.total, "used": mem.used, "free": mem.available},
            "cpu_info": {
                "manufacturer": self._manufacturer,
                "brand": self._brand,
                "speed": cpu_speed_ghz(),
                "temperature": cpu_temperature(),
            },
            "captured_at": time.time(),
        }

    def collect_processes(self) -> list[dict[str, Any]]:
        """Return one raw record per visible process.

        Processes that vanish or deny access mid-iteration are skipped.

        Raises:
            CollectorUnavailable: If the process table cannot be enumerated.
        """
        records: list[dict[str, Any]] = []
        try:
            for proc in psutil.process_iter(attrs=_PROCESS_ATTRS):
                try:
                    info = proc.info
                    pid = info.get("pid", 0)
                    records.append(
                        {
                            "pid": pid,
                            "name": info.get("name") or "",
                            "cpu": info.get("cpu_percent") or 0.0,
                            "mem": info.get("memory_percent") or 0.0,
                            "user": info.get("username") or "unknown",
                            "killable": pid not in (0, 1, self._own_pid),
                        }
                    )
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
        except (OSError, RuntimeError, psutil.Error) as e:
            raise CollectorUnavailable(f"process enumeration failed: {e}") from e

        return records


def _cpuinfo_fields(path: Path = Path("/proc/cpuinfo")) -> dict[str, str]:
    """First-processor fields from /proc/cpuinfo (Linux only, else empty)."""
    fields: dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return fields
    for line in text.splitlines():
        if not line.strip():
            break
        key, _, value = line.partition(":")
        fields[key.strip()] = value.strip()
    return fields


def cpu_identity() -> tuple[str, str]:
    """(manufacturer, brand) of the CPU, "unknown" where it can't be told."""
    info = _cpuinfo_fields()
    brand = info.get("model name") or info.get("Hardware") or platform.processor()
    vendor = info.get("vendor_id") or brand or ""
    manufacturer = "unknown"
    for token, name in _VENDORS.items():
        if token in vendor.lower():
            manufacturer = name
            break
    return manufacturer, brand or platform.machine() or "unknown"


def cpu_speed_ghz() -> float:
    """Current CPU clock in GHz, or 0.0 when psutil can't read it."""
    try:
        freq = psutil.cpu_freq()
    except (OSError, RuntimeError, NotImplementedError, psutil.Error):
        return 0.0
    if freq is None or not freq.current:
        return 0.0
    return round(freq.current / 1000, 2)


def cpu_temperature() -> float | None:
    """CPU package temperature in Celsius, or None without a readable sensor."""
    sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
    if sensors_temperatures is None:
        return None
    try:
        sensors = sensors_temperatures()
    except (OSError, RuntimeError, psutil.Error):
        return None

    for chip in _CPU_SENSORS:
        readings = sensors.get(chip)
        if not readings:
            continue
        for reading in readings:
            if reading.label.startswith(("Package", "Tdie", "Tctl")):
                return reading.current
        return readings[0].current
    return None
