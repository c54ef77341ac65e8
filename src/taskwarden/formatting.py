"""Formatting utilities for consistent output across CLI and TUI."""

import time
from typing import Any

_BYTE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(value: float) -> str:
    """Format a byte count with a binary unit.

    Returns:
        "512 B", "1.5 KB", "3.2 GB" and so on. Negative input is shown as 0 B.
    """
    size = max(0.0, float(value))
    for unit in _BYTE_UNITS:
        if size < 1024 or unit == _BYTE_UNITS[-1]:
            if unit == "B":
                return f"{size:.0f} B"
            return f"{size:.1f} {unit}"
        size /= 1024
    raise AssertionError("unreachable")


def format_percent(value: Any) -> str:
    """Format a percentage with one decimal ("42.7%").

    Accepts the string form used on the wire for memory usage.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return "-"
    return f"{number:.1f}%"


def format_age(captured_at: float, *, now: float | None = None) -> str:
    """Format how long ago a snapshot was captured.

    Args:
        captured_at: Wall-clock capture timestamp (0 means never captured)
        now: Current time (defaults to time.time())

    Returns:
        "2s ago", "3m ago", or "never" for placeholder data.
    """
    if captured_at <= 0:
        return "never"
    if now is None:
        now = time.time()
    age = max(0.0, now - captured_at)
    if age < 60:
        return f"{age:.0f}s ago"
    if age < 3600:
        return f"{age / 60:.0f}m ago"
    return f"{age / 3600:.1f}h ago"


def load_bar(load: float, width: int = 10) -> str:
    """Render a 0-100 load as a fixed-width bar of block characters."""
    load = min(100.0, max(0.0, float(load)))
    filled = round(load / 100 * width)
    return "█" * filled + "░" * (width - filled)


def system_summary(snapshot: dict[str, Any]) -> str:
    """One-line summary of a system_info snapshot (wire form)."""
    cpu = snapshot.get("cpu", {})
    memory = snapshot.get("memory", {})
    cores = cpu.get("cores", [])
    return (
        f"CPU {format_percent(cpu.get('load'))} ({len(cores)} cores)  "
        f"MEM {format_bytes(memory.get('used', 0))} / {format_bytes(memory.get('total', 0))} "
        f"({format_percent(memory.get('used_percent'))})"
    )


def format_cpu_info(cpu: dict[str, Any]) -> str:
    """CPU model, clock and temperature from a system_info "cpu" block.

    Unknown parts are left out, so older or placeholder snapshots give "".
    """
    parts = []
    manufacturer = cpu.get("manufacturer") or "unknown"
    brand = cpu.get("brand") or "unknown"
    if brand != "unknown":
        if manufacturer != "unknown" and not brand.lower().startswith(manufacturer.lower()):
            brand = f"{manufacturer} {brand}"
        parts.append(brand)
    elif manufacturer != "unknown":
        parts.append(manufacturer)
    if cpu.get("speed"):
        parts.append(f"{float(cpu['speed']):.2f} GHz")
    if cpu.get("temperature") is not None:
        parts.append(f"{float(cpu['temperature']):.1f}°C")
    return " · ".join(parts)


# Process table columns that can be sorted on, as named in the wire form
SORT_FIELDS = ("pid", "name", "cpu", "memory", "user")


def filter_processes(processes: list[dict[str, Any]], query: str) -> list[dict[str, Any]]:
    """Rows whose name, pid or user contains `query` (case-insensitive)."""
    needle = query.strip().lower()
    if not needle:
        return list(processes)
    return [
        proc
        for proc in processes
        if needle in str(proc.get("name", "")).lower()
        or needle in str(proc.get("pid", ""))
        or needle in str(proc.get("user", "")).lower()
    ]


def sort_processes(
    processes: list[dict[str, Any]], field: str = "cpu", *, descending: bool = True
) -> list[dict[str, Any]]:
    """Sort rows on one of SORT_FIELDS. Text columns compare case-insensitively.

    Raises:
        ValueError: `field` is not a sortable column
    """
    if field not in SORT_FIELDS:
        raise ValueError(f"cannot sort on {field!r}; choose from {', '.join(SORT_FIELDS)}")

    def key(proc: dict[str, Any]) -> Any:
        value = proc.get(field)
        if field in ("name", "user"):
            return str(value or "").lower()
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    return sorted(processes, key=key, reverse=descending)
