"""Data models for taskwarden.

Snapshots are immutable. Every numeric field is clamped on construction
because upstream sources are allowed to report out-of-range values.
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResourceKind(str, Enum):
    """Cached resource kinds, each with its own freshness budget and cadence."""

    SYSTEM = "system"
    PROCESSES = "processes"


class KillStatus(str, Enum):
    """Phases of a kill request as reported to the viewer."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _as_float(value: Any) -> float:
    """Coerce a loosely typed numeric value, treating garbage as 0."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return result


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def clamp_percent(value: Any) -> float:
    """Clamp a percentage into [0, 100]."""
    return min(100.0, max(0.0, _as_float(value)))


def clamp_non_negative(value: Any) -> float:
    return max(0.0, _as_float(value))


@dataclass(frozen=True, slots=True)
class MemoryInfo:
    """Memory totals in bytes. Invariant: used + free <= total."""

    total: int
    used: int
    free: int

    @classmethod
    def build(cls, total: Any, used: Any, free: Any) -> MemoryInfo:
        total_b = max(0, _as_int(total))
        used_b = min(max(0, _as_int(used)), total_b)
        free_b = min(max(0, _as_int(free)), total_b - used_b)
        return cls(total=total_b, used=used_b, free=free_b)

    @property
    def used_percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return clamp_percent(self.used / self.total * 100)


@dataclass(frozen=True, slots=True)
class CpuInfo:
    """Static CPU identity plus the current clock and temperature.

    `speed` is in GHz (0.0 when unknown); `temperature` is in degrees Celsius
    and None where the platform exposes no sensor.
    """

    manufacturer: str = "unknown"
    brand: str = "unknown"
    speed: float = 0.0
    temperature: float | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> CpuInfo:
        raw = raw or {}
        temperature = raw.get("temperature")
        return cls(
            manufacturer=str(raw.get("manufacturer") or "unknown"),
            brand=str(raw.get("brand") or "unknown"),
            speed=clamp_non_negative(raw.get("speed")),
            temperature=None if temperature is None else _as_float(temperature),
        )


@dataclass(frozen=True, slots=True)
class SystemSnapshot:
    """Point-in-time CPU and memory usage."""

    cpu_load: float
    cores: tuple[float, ...]
    memory: MemoryInfo
    captured_at: float
    source: str = "psutil"
    cpu_info: CpuInfo = field(default_factory=CpuInfo)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, source: str = "psutil") -> SystemSnapshot:
        """Build a snapshot from a raw collector sample.

        Expected shape::

            {"cpu": 42.7, "cores": [{"load": 10}, ...],
             "mem": {"total": 1000, "used": 600, "free": 400},
             "cpu_info": {"manufacturer": "Intel", "brand": "Core i7",
                          "speed": 2.6, "temperature": 54.0}}

        Cores may also be given as bare numbers; `cpu_info` is optional.
        """
        cores = []
        for core in raw.get("cores") or []:
            load = core.get("load") if isinstance(core, Mapping) else core
            cores.append(clamp_percent(load))

        mem = raw.get("mem") or {}
        return cls(
            cpu_load=clamp_percent(raw.get("cpu")),
            cores=tuple(cores),
            memory=MemoryInfo.build(mem.get("total"), mem.get("used"), mem.get("free")),
            captured_at=_as_float(raw.get("captured_at")) or time.time(),
            source=source,
            cpu_info=CpuInfo.from_raw(raw.get("cpu_info")),
        )

    @property
    def used_percent(self) -> float:
        return self.memory.used_percent

    def to_dict(self) -> dict[str, Any]:
        """Wire form sent to viewers."""
        temperature = self.cpu_info.temperature
        if temperature is not None:
            temperature = round(temperature, 1)
        return {
            "cpu": {
                "load": round(self.cpu_load, 1),
                "cores": [{"load": round(load, 1)} for load in self.cores],
                "manufacturer": self.cpu_info.manufacturer,
                "brand": self.cpu_info.brand,
                "speed": round(self.cpu_info.speed, 2),
                "temperature": temperature,
            },
            "memory": {
                "total": self.memory.total,
                "used": self.memory.used,
                "free": self.memory.free,
                "used_percent": f"{self.used_percent:.1f}",
            },
            "captured_at": self.captured_at,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class ProcessEntry:
    """One row of the process table."""

    pid: int
    name: str
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_percent: float
    user: str
    killable: bool = True

    @classmethod
    def from_raw(
        cls,
        raw: Mapping[str, Any],
        *,
        protected: Iterable[str] = (),
    ) -> ProcessEntry | None:
        """Build an entry from a raw record, or None if it has no usable identity."""
        pid = _as_int(raw.get("pid"))
        name = str(raw.get("name") or "").strip()
        if pid <= 0 or not name:
            return None

        protected_lower = {p.lower() for p in protected}
        killable = raw.get("killable", True) is not False and name.lower() not in protected_lower

        return cls(
            pid=pid,
            name=name,
            cpu_percent=clamp_non_negative(raw.get("cpu")),
            memory_percent=clamp_percent(raw.get("mem")),
            user=str(raw.get("user") or "unknown"),
            killable=killable,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "cpu": round(self.cpu_percent, 1),
            "memory": round(self.memory_percent, 1),
            "user": self.user,
            "killable": self.killable,
        }


@dataclass(frozen=True, slots=True)
class ProcessSnapshot:
    """Top-N processes by CPU, descending."""

    entries: tuple[ProcessEntry, ...]
    captured_at: float
    source: str = "psutil"
    total_count: int = 0

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[ProcessEntry],
        *,
        top_n: int,
        source: str = "psutil",
        captured_at: float | None = None,
    ) -> ProcessSnapshot:
        """Deduplicate by pid, sort by CPU descending and truncate to top_n."""
        unique: dict[int, ProcessEntry] = {}
        for entry in entries:
            unique.setdefault(entry.pid, entry)

        ordered = sorted(unique.values(), key=lambda e: e.cpu_percent, reverse=True)
        return cls(
            entries=tuple(ordered[: max(0, top_n)]),
            captured_at=captured_at if captured_at is not None else time.time(),
            source=source,
            total_count=len(unique),
        )

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, pid: int) -> ProcessEntry | None:
        for entry in self.entries:
            if entry.pid == pid:
                return entry
        return None

    def pids(self) -> set[int]:
        return {entry.pid for entry in self.entries}

    def to_dict(self) -> dict[str, Any]:
        return {
            "processes": [entry.to_dict() for entry in self.entries],
            "total_count": self.total_count,
            "captured_at": self.captured_at,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class KillRequest:
    """A viewer's request to terminate one process."""

    pid: Any  # Unvalidated; the pipeline decides whether it is a usable pid
    session_id: str
    request_id: str
    requested_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class KillOutcome:
    """Result of a kill request."""

    pid: Any
    status: KillStatus
    reason: str = ""
    request_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is KillStatus.SUCCEEDED

    @classmethod
    def failed(cls, pid: Any, reason: str, request_id: str | None = None) -> KillOutcome:
        return cls(pid=pid, status=KillStatus.FAILED, reason=reason, request_id=request_id)

    def with_request_id(self, request_id: str | None) -> KillOutcome:
        return KillOutcome(
            pid=self.pid, status=self.status, reason=self.reason, request_id=request_id
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "request_id": self.request_id,
            "status": self.status.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> KillOutcome:
        try:
            status = KillStatus(data.get("status"))
        except ValueError:
            status = KillStatus.FAILED
        return cls(
            pid=data.get("pid"),
            status=status,
            reason=str(data.get("reason") or ""),
            request_id=data.get("request_id"),
        )
