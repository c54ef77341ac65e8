"""Console output for the CLI and structured logging for the daemon.

Two audiences, two channels:

- People running ``taskwarden status``, ``kill`` or ``config`` get short
  Rich-formatted lines (timestamp, level tag, optional icon, message).
- The daemon writes structlog events as JSON Lines to a rotating log file,
  and mirrors them to stderr in a readable form when run in the foreground.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from taskwarden.config import Config
    from taskwarden.models import KillOutcome

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Console lines
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Glyphs that prefix console messages."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "[yellow]…[/]"
    KILL = "[red]☠[/]"
    LIVE = "[green]●[/]"
    DOWN = "[red]●[/]"
    FILE = "[blue]▤[/]"


_TAGS = {
    "info": "[cyan]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one console line.

    Args:
        level: "info", "warn" or "error"
        msg: Message text; Rich markup is allowed
        icon: Optional `Icon` glyph placed before the message
    """
    tag = _TAGS.get(level, f"[{level}]")
    parts = [f"[dim]{datetime.now():%H:%M:%S}[/]", tag]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


def daemon_not_running(path: str) -> None:
    error(f"Daemon not running [dim](no socket at {path})[/]", Icon.DOWN)


def health_ok(sessions: int, uptime: float) -> None:
    viewers = "viewer" if sessions == 1 else "viewers"
    info(f"Daemon [green]ok[/] [dim](up {uptime:.0f}s, {sessions} {viewers})[/]", Icon.LIVE)


def health_failed(reason: str) -> None:
    error(f"Daemon not healthy: {reason}", Icon.FAIL)


def kill_sent(pid: int) -> None:
    info(f"Terminating [cyan]{pid}[/]", Icon.WAIT)


def kill_reported(outcome: KillOutcome) -> None:
    """Print the terminal result of a kill request."""
    if outcome.succeeded:
        info(f"[cyan]{outcome.pid}[/] {outcome.reason or 'terminated'}", Icon.KILL)
    else:
        error(f"[cyan]{outcome.pid}[/] not terminated: {outcome.reason}", Icon.FAIL)


def config_created(path: str) -> None:
    info(f"Created config at [cyan]{path}[/]", Icon.FILE)


def config_exists(path: str) -> None:
    warn(f"Config already exists at [cyan]{path}[/] (use --force to overwrite)", Icon.FILE)


# ─────────────────────────────────────────────────────────────────────────────
# Daemon log
# ─────────────────────────────────────────────────────────────────────────────

# Applied to events from structlog loggers and from plain stdlib loggers alike
_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _json_file_handler(config: Config) -> logging.Handler:
    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def configure(config: Config, *, console: bool = True) -> None:
    """Route structlog through stdlib logging to the JSON file (and stderr).

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.

    Args:
        config: Supplies the log path and rotation limits
        console: Also render events to stderr in human-readable form
    """
    handlers = [_json_file_handler(config)]
    if console:
        handlers.append(_console_handler())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.INFO)
    for handler in handlers:
        handler.setLevel(logging.INFO)
        root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *_PRE_CHAIN,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
