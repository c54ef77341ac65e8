"""Configuration system for taskwarden."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

# Process names that are never offered for termination, matched case-insensitively
DEFAULT_PROTECTED_NAMES = [
    "init",
    "systemd",
    "launchd",
    "kernel_task",
    "kthreadd",
    "WindowServer",
    "System",
    "System Idle Process",
    "Registry",
    "smss.exe",
    "csrss.exe",
    "wininit.exe",
    "services.exe",
    "lsass.exe",
    "winlogon.exe",
]


@dataclass
class CacheConfig:
    """Freshness budgets for the sample cache.

    A cached snapshot older than its max age triggers a background refresh on
    the next read. Process enumeration is costlier, so its budget is longer.
    """

    system_max_age: float = 1.5  # Seconds before CPU/memory data is stale
    process_max_age: float = 4.0  # Seconds before the process table is stale
    refresh_timeout: float = 15.0  # Upper bound for one refresh (all fallbacks)


@dataclass
class BroadcastConfig:
    """Push cadence for connected viewers."""

    system_interval: float = 2.0  # Seconds between system_info pushes
    process_interval: float = 5.0  # Seconds between process_list pushes
    outbox_size: int = 16  # Pending messages per viewer before oldest is dropped


@dataclass
class CollectorConfig:
    """Sampling and fallback behaviour."""

    top_n: int = 50  # Processes kept per snapshot (sorted by CPU)
    collector_timeout: float = 5.0  # Seconds for one psutil call
    primary_attempts: int = 2  # Tries of the psutil collector before falling back
    shell_timeout: float = 5.0  # Seconds for ps/tasklist enumeration
    shell_fallback: bool = True  # Parse ps/tasklist output when psutil fails
    protected_names: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_NAMES))


@dataclass
class KillConfig:
    """Process termination behaviour."""

    kill_timeout: float = 5.0  # Seconds for the platform kill call
    confirm_timeout: float = 3.0  # Seconds to wait for the process to disappear
    client_wait: float = 5.0  # Client-side wait for a kill outcome


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    heartbeat_interval: float = 60.0  # Seconds between heartbeat log lines
    log_max_bytes: int = 5 * 1024 * 1024  # Rotate daemon.log past this size
    log_backup_count: int = 3  # Rotated files kept alongside daemon.log


@dataclass
class TUIConfig:
    """Dashboard display and reconnect backoff."""

    max_rows: int = 50  # Rows shown in the process table
    reconnect_initial_delay: float = 1.0  # First wait after losing the daemon
    reconnect_max_delay: float = 30.0  # Cap on the wait between attempts
    reconnect_multiplier: float = 2.0  # Growth factor per failed attempt


SECTIONS = ("cache", "broadcast", "collector", "kill", "system", "tui")


def _as_table(section: object) -> tomlkit.items.Table:
    """TOML table for one config section; nested dataclasses become subtables."""
    table = tomlkit.table()
    for f in fields(section):  # type: ignore[arg-type]
        value = getattr(section, f.name)
        is_section = is_dataclass(value) and not isinstance(value, type)
        table.add(f.name, _as_table(value) if is_section else value)
    return table


@dataclass
class Config:
    """All taskwarden settings, one dataclass per TOML section.

    Paths follow the XDG layout: settings under ~/.config, the log under
    ~/.local/state, and the PID file and socket under /tmp so a reboot
    never leaves them behind.
    """

    cache: CacheConfig = field(default_factory=CacheConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    kill: KillConfig = field(default_factory=KillConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)

    @property
    def config_dir(self) -> Path:
        return Path.home() / ".config" / "taskwarden"

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        return Path.home() / ".local" / "state" / "taskwarden"

    @property
    def runtime_dir(self) -> Path:
        return Path("/tmp/taskwarden")

    @property
    def log_path(self) -> Path:
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        return self.runtime_dir / "daemon.sock"

    def to_toml(self) -> str:
        """Every section as a TOML document, in a stable order."""
        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _as_table(getattr(self, name)))
            doc.add(tomlkit.nl())
        return tomlkit.dumps(doc)

    def save(self, path: Path | None = None) -> None:
        target = path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml())

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Read the config file, filling anything it omits from the dataclass defaults.

        A missing file is not an error: the result equals ``Config()``.

        Raises:
            ValueError: The file is not valid TOML, or a value is out of range
        """
        defaults = cls()
        source = path or defaults.config_path
        if not source.exists():
            return defaults

        try:
            data = tomlkit.parse(source.read_text())
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {source}: {e}") from e

        return cls(
            cache=_load_cache_config(data.get("cache", {})),
            broadcast=_load_broadcast_config(data.get("broadcast", {})),
            collector=_load_collector_config(data.get("collector", {})),
            kill=_load_kill_config(data.get("kill", {})),
            system=_load_system_config(data.get("system", {})),
            tui=_load_tui_config(data.get("tui", {})),
        )

    def max_age_for(self, kind: str) -> float:
        """Return the cache freshness budget for a resource kind."""
        if kind == "system":
            return self.cache.system_max_age
        if kind == "processes":
            return self.cache.process_max_age
        raise ValueError(f"Unknown resource kind: {kind!r}")

    def interval_for(self, kind: str) -> float:
        """Return the broadcast cadence for a resource kind."""
        if kind == "system":
            return self.broadcast.system_interval
        if kind == "processes":
            return self.broadcast.process_interval
        raise ValueError(f"Unknown resource kind: {kind!r}")


def _require_positive(section: str, name: str, value: float) -> float:
    if value <= 0:
        raise ValueError(f"{section}.{name} must be > 0, got {value}")
    return value


def _load_cache_config(data: dict) -> CacheConfig:
    """Load cache config from TOML data, using dataclass defaults for missing fields."""
    d = CacheConfig()
    return CacheConfig(
        system_max_age=_require_positive(
            "cache", "system_max_age", data.get("system_max_age", d.system_max_age)
        ),
        process_max_age=_require_positive(
            "cache", "process_max_age", data.get("process_max_age", d.process_max_age)
        ),
        refresh_timeout=_require_positive(
            "cache", "refresh_timeout", data.get("refresh_timeout", d.refresh_timeout)
        ),
    )


def _load_broadcast_config(data: dict) -> BroadcastConfig:
    """Load broadcast config from TOML data."""
    d = BroadcastConfig()
    outbox_size = data.get("outbox_size", d.outbox_size)
    if outbox_size < 1:
        raise ValueError(f"broadcast.outbox_size must be >= 1, got {outbox_size}")
    return BroadcastConfig(
        system_interval=_require_positive(
            "broadcast", "system_interval", data.get("system_interval", d.system_interval)
        ),
        process_interval=_require_positive(
            "broadcast", "process_interval", data.get("process_interval", d.process_interval)
        ),
        outbox_size=outbox_size,
    )


def _load_collector_config(data: dict) -> CollectorConfig:
    """Load collector config from TOML data."""
    d = CollectorConfig()

    top_n = data.get("top_n", d.top_n)
    primary_attempts = data.get("primary_attempts", d.primary_attempts)

    if top_n < 1:
        raise ValueError(f"collector.top_n must be >= 1, got {top_n}")
    if primary_attempts < 1:
        raise ValueError(f"collector.primary_attempts must be >= 1, got {primary_attempts}")

    return CollectorConfig(
        top_n=top_n,
        collector_timeout=_require_positive(
            "collector", "collector_timeout", data.get("collector_timeout", d.collector_timeout)
        ),
        primary_attempts=primary_attempts,
        shell_timeout=_require_positive(
            "collector", "shell_timeout", data.get("shell_timeout", d.shell_timeout)
        ),
        shell_fallback=data.get("shell_fallback", d.shell_fallback),
        protected_names=list(data.get("protected_names", d.protected_names)),
    )


def _load_kill_config(data: dict) -> KillConfig:
    """Load kill config from TOML data."""
    d = KillConfig()
    return KillConfig(
        kill_timeout=_require_positive(
            "kill", "kill_timeout", data.get("kill_timeout", d.kill_timeout)
        ),
        confirm_timeout=_require_positive(
            "kill", "confirm_timeout", data.get("confirm_timeout", d.confirm_timeout)
        ),
        client_wait=_require_positive(
            "kill", "client_wait", data.get("client_wait", d.client_wait)
        ),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        heartbeat_interval=_require_positive(
            "system", "heartbeat_interval", data.get("heartbeat_interval", d.heartbeat_interval)
        ),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_tui_config(data: dict) -> TUIConfig:
    """Load TUI config from TOML data."""
    d = TUIConfig()
    return TUIConfig(
        max_rows=data.get("max_rows", d.max_rows),
        reconnect_initial_delay=data.get("reconnect_initial_delay", d.reconnect_initial_delay),
        reconnect_max_delay=data.get("reconnect_max_delay", d.reconnect_max_delay),
        reconnect_multiplier=data.get("reconnect_multiplier", d.reconnect_multiplier),
    )
