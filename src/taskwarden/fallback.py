"""Ordered acquisition strategies for system and process snapshots.

Each resource kind has a list of strategies tried in order until one
produces a snapshot:

- system:    psutil -> placeholder
- processes: psutil -> ps/tasklist shell enumeration -> placeholder

Every failed attempt is recorded as an AttemptFailure with a typed reason.
The placeholder strategies cannot fail, so a default chain always yields a
snapshot and viewers never see "no data".
"""

from __future__ import annotations

import asyncio
import csv
import os
import sys
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from taskwarden.collector import CollectorUnavailable, SystemCollector
from taskwarden.models import (
    MemoryInfo,
    ProcessEntry,
    ProcessSnapshot,
    ResourceKind,
    SystemSnapshot,
)

if TYPE_CHECKING:
    from taskwarden.config import Config

log = structlog.get_logger()

T = TypeVar("T")

# Runs argv with a timeout and returns decoded stdout
CommandRunner = Callable[[list[str], float], Awaitable[str]]

PLACEHOLDER_SOURCE = "placeholder"
PLACEHOLDER_PROCESS_NAME = "<process data unavailable>"

# Empty headers suppress the header line on both procps and BSD ps
PS_COMMAND = [
    "ps", "-A",
    "-o", "pid=", "-o", "%cpu=", "-o", "%mem=", "-o", "user=", "-o", "comm=",
]  # fmt: skip
TASKLIST_COMMAND = ["tasklist", "/FO", "CSV", "/NH"]


class FailureReason(str, Enum):
    """Why a strategy attempt did not produce a snapshot."""

    ERROR = "error"
    TIMEOUT = "timeout"
    EMPTY = "empty"


@dataclass(frozen=True)
class AttemptFailure:
    """One failed strategy attempt."""

    strategy: str
    reason: FailureReason
    detail: str = ""


class ParseError(ValueError):
    """A line of shell enumeration output could not be parsed."""


class Strategy(Generic[T]):
    """Base class for acquisition strategies.

    Subclasses implement fetch(). The chain applies `timeout` to each attempt
    and retries up to `attempts` times before moving on.
    """

    name: str = "strategy"
    attempts: int = 1
    timeout: float | None = None

    async def fetch(self) -> T:
        raise NotImplementedError


# ─────────────────────────────────────────────────────────────────────────────
# Primary (psutil)
# ─────────────────────────────────────────────────────────────────────────────


class PsutilSystemStrategy(Strategy[SystemSnapshot]):
    """CPU and memory sample from the SystemCollector."""

    name = "psutil"

    def __init__(self, collector: SystemCollector, *, attempts: int = 2, timeout: float = 5.0):
        self.collector = collector
        self.attempts = attempts
        self.timeout = timeout

    async def fetch(self) -> SystemSnapshot:
        raw = await asyncio.to_thread(self.collector.collect_system)
        return SystemSnapshot.from_raw(raw, source=self.name)


class PsutilProcessStrategy(Strategy[ProcessSnapshot]):
    """Process table from the SystemCollector."""

    name = "psutil"

    def __init__(
        self,
        collector: SystemCollector,
        *,
        top_n: int,
        protected: Iterable[str] = (),
        attempts: int = 2,
        timeout: float = 5.0,
    ):
        self.collector = collector
        self.top_n = top_n
        self.protected = list(protected)
        self.attempts = attempts
        self.timeout = timeout

    async def fetch(self) -> ProcessSnapshot:
        records = await asyncio.to_thread(self.collector.collect_processes)
        entries = []
        for record in records:
            entry = ProcessEntry.from_raw(record, protected=self.protected)
            if entry is not None:
                entries.append(entry)
        return ProcessSnapshot.from_entries(entries, top_n=self.top_n, source=self.name)


# ─────────────────────────────────────────────────────────────────────────────
# Shell enumeration
# ─────────────────────────────────────────────────────────────────────────────


async def run_command(argv: list[str], timeout: float) -> str:
    """Run a command and return its stdout.

    The process is killed if it does not finish within `timeout` seconds.

    Raises:
        asyncio.TimeoutError: The command did not finish in time.
        CollectorUnavailable: The command is missing or exited non-zero.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise CollectorUnavailable(f"{argv[0]} not runnable: {e}") from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        raise CollectorUnavailable(f"{argv[0]} exited with status {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


def parse_ps_line(line: str, protected: Iterable[str] = ()) -> ProcessEntry:
    """Parse one line of `ps -o pid= -o %cpu= -o %mem= -o user= -o comm=` output.

    Raises:
        ParseError: The line has missing or non-numeric fields.
    """
    parts = line.split(None, 4)
    if len(parts) < 5:
        raise ParseError(f"expected 5 fields, got {len(parts)}")

    pid_s, cpu_s, mem_s, user, comm = parts
    try:
        pid = int(pid_s)
        cpu = float(cpu_s)
        mem = float(mem_s)
    except ValueError as e:
        raise ParseError(str(e)) from e

    # macOS reports the executable path; Linux comm values may contain '/'
    name = comm.strip()
    if name.startswith("/"):
        name = name.rsplit("/", 1)[-1]

    entry = ProcessEntry.from_raw(
        {"pid": pid, "name": name, "cpu": cpu, "mem": mem, "user": user},
        protected=protected,
    )
    if entry is None:
        raise ParseError(f"unusable pid or name: {pid_s!r}")
    return entry


def parse_tasklist_line(row: list[str], protected: Iterable[str] = ()) -> ProcessEntry:
    """Parse one CSV row of `tasklist /FO CSV /NH` output.

    tasklist has no CPU or per-process memory percent, so both are reported as 0.

    Raises:
        ParseError: The row has missing or non-numeric fields.
    """
    if len(row) < 2:
        raise ParseError(f"expected at least 2 columns, got {len(row)}")
    try:
        pid = int(row[1])
    except ValueError as e:
        raise ParseError(str(e)) from e

    entry = ProcessEntry.from_raw(
        {"pid": pid, "name": row[0], "cpu": 0.0, "mem": 0.0, "user": "unknown"},
        protected=protected,
    )
    if entry is None:
        raise ParseError(f"unusable pid or name: {row[:2]!r}")
    return entry


def _collect_parsed(
    lines: Iterable[Any],
    parse_line: Callable[..., ProcessEntry],
    protected: Iterable[str],
    command: str,
) -> list[ProcessEntry]:
    entries: list[ProcessEntry] = []
    skipped = 0
    for line in lines:
        try:
            entries.append(parse_line(line, protected))
        except ParseError as e:
            skipped += 1
            log.debug("shell_line_skipped", command=command, line=str(line)[:120], error=str(e))
    if skipped:
        log.info("shell_lines_skipped", command=command, skipped=skipped, parsed=len(entries))
    return entries


def parse_ps_output(text: str, protected: Iterable[str] = ()) -> list[ProcessEntry]:
    """Parse ps output, dropping malformed lines instead of aborting."""
    lines = [line for line in text.splitlines() if line.strip()]
    return _collect_parsed(lines, parse_ps_line, protected, "ps")


def parse_tasklist_output(text: str, protected: Iterable[str] = ()) -> list[ProcessEntry]:
    """Parse tasklist CSV output, dropping malformed rows instead of aborting."""
    rows = [row for row in csv.reader(text.splitlines()) if row]
    return _collect_parsed(rows, parse_tasklist_line, protected, "tasklist")


class ShellProcessStrategy(Strategy[ProcessSnapshot]):
    """Process table parsed from the platform's enumeration command."""

    def __init__(
        self,
        *,
        top_n: int,
        protected: Iterable[str] = (),
        timeout: float = 5.0,
        runner: CommandRunner = run_command,
        platform: str | None = None,
    ):
        self.top_n = top_n
        self.protected = list(protected)
        self.shell_timeout = timeout
        self.runner = runner
        self.windows = (platform or sys.platform) == "win32"
        self.name = "tasklist" if self.windows else "ps"

    async def fetch(self) -> ProcessSnapshot:
        if self.windows:
            text = await self.runner(TASKLIST_COMMAND, self.shell_timeout)
            entries = parse_tasklist_output(text, self.protected)
        else:
            text = await self.runner(PS_COMMAND, self.shell_timeout)
            entries = parse_ps_output(text, self.protected)
        return ProcessSnapshot.from_entries(entries, top_n=self.top_n, source=self.name)


# ─────────────────────────────────────────────────────────────────────────────
# Placeholder
# ─────────────────────────────────────────────────────────────────────────────


def placeholder_system_snapshot() -> SystemSnapshot:
    """Zeroed system snapshot sized to the CPU count."""
    return SystemSnapshot(
        cpu_load=0.0,
        cores=tuple(0.0 for _ in range(os.cpu_count() or 1)),
        memory=MemoryInfo.build(0, 0, 0),
        captured_at=0.0,
        source=PLACEHOLDER_SOURCE,
    )


def placeholder_process_snapshot() -> ProcessSnapshot:
    """Single labelled, non-killable entry standing in for the process table."""
    entry = ProcessEntry(
        pid=1,
        name=PLACEHOLDER_PROCESS_NAME,
        cpu_percent=0.0,
        memory_percent=0.0,
        user="-",
        killable=False,
    )
    return ProcessSnapshot(
        entries=(entry,), captured_at=0.0, source=PLACEHOLDER_SOURCE, total_count=0
    )


class PlaceholderSystemStrategy(Strategy[SystemSnapshot]):
    name = PLACEHOLDER_SOURCE

    async def fetch(self) -> SystemSnapshot:
        return placeholder_system_snapshot()


class PlaceholderProcessStrategy(Strategy[ProcessSnapshot]):
    name = PLACEHOLDER_SOURCE

    async def fetch(self) -> ProcessSnapshot:
        return placeholder_process_snapshot()


# ─────────────────────────────────────────────────────────────────────────────
# Chain
# ─────────────────────────────────────────────────────────────────────────────


class FallbackChain:
    """Runs the strategy list for each resource kind in order."""

    def __init__(
        self,
        system_strategies: list[Strategy[SystemSnapshot]],
        process_strategies: list[Strategy[ProcessSnapshot]],
    ) -> None:
        if not system_strategies or not process_strategies:
            raise ValueError("each resource kind needs at least one strategy")
        self._strategies: dict[ResourceKind, list[Strategy[Any]]] = {
            ResourceKind.SYSTEM: list(system_strategies),
            ResourceKind.PROCESSES: list(process_strategies),
        }
        self._last_failures: dict[ResourceKind, list[AttemptFailure]] = {
            kind: [] for kind in ResourceKind
        }

    @classmethod
    def from_config(
        cls,
        config: Config,
        collector: SystemCollector | None = None,
        *,
        runner: CommandRunner = run_command,
    ) -> FallbackChain:
        """Build the default chain: psutil, then shell (if enabled), then placeholder."""
        collector = collector or SystemCollector()
        c = config.collector

        process_strategies: list[Strategy[ProcessSnapshot]] = [
            PsutilProcessStrategy(
                collector,
                top_n=c.top_n,
                protected=c.protected_names,
                attempts=c.primary_attempts,
                timeout=c.collector_timeout,
            )
        ]
        if c.shell_fallback:
            process_strategies.append(
                ShellProcessStrategy(
                    top_n=c.top_n,
                    protected=c.protected_names,
                    timeout=c.shell_timeout,
                    runner=runner,
                )
            )
        process_strategies.append(PlaceholderProcessStrategy())

        return cls(
            system_strategies=[
                PsutilSystemStrategy(
                    collector, attempts=c.primary_attempts, timeout=c.collector_timeout
                ),
                PlaceholderSystemStrategy(),
            ],
            process_strategies=process_strategies,
        )

    def strategies(self, kind: ResourceKind) -> list[str]:
        return [s.name for s in self._strategies[kind]]

    def last_failures(self, kind: ResourceKind) -> list[AttemptFailure]:
        """Failures recorded during the most recent fetch of this kind."""
        return list(self._last_failures[kind])

    async def fetch_system(self) -> SystemSnapshot:
        return await self.fetch(ResourceKind.SYSTEM)

    async def fetch_processes(self) -> ProcessSnapshot:
        return await self.fetch(ResourceKind.PROCESSES)

    async def fetch(self, kind: ResourceKind) -> Any:
        """Return the first snapshot any strategy produces.

        Raises:
            CollectorUnavailable: Every strategy failed (only possible when the
                chain was built without a placeholder).
        """
        failures: list[AttemptFailure] = []
        self._last_failures[kind] = failures

        for index, strategy in enumerate(self._strategies[kind]):
            if index > 0:
                log.warning(
                    "fallback_engaged",
                    kind=kind.value,
                    strategy=strategy.name,
                    after=failures[-1].strategy if failures else None,
                    reason=failures[-1].reason.value if failures else None,
                )
            for attempt in range(1, strategy.attempts + 1):
                failure, snapshot = await self._attempt(kind, strategy)
                if failure is None:
                    if index > 0:
                        log.info("fallback_recovered", kind=kind.value, strategy=strategy.name)
                    return snapshot
                failures.append(failure)
                log.warning(
                    "strategy_failed",
                    kind=kind.value,
                    strategy=strategy.name,
                    attempt=attempt,
                    reason=failure.reason.value,
                    detail=failure.detail,
                )

        raise CollectorUnavailable(
            f"all {kind.value} strategies failed: "
            + ", ".join(f"{f.strategy}={f.reason.value}" for f in failures)
        )

    async def _attempt(
        self, kind: ResourceKind, strategy: Strategy[Any]
    ) -> tuple[AttemptFailure | None, Any]:
        try:
            if strategy.timeout is not None:
                snapshot = await asyncio.wait_for(strategy.fetch(), timeout=strategy.timeout)
            else:
                snapshot = await strategy.fetch()
        except asyncio.TimeoutError:
            return AttemptFailure(strategy.name, FailureReason.TIMEOUT, "timed out"), None
        except Exception as e:
            return AttemptFailure(strategy.name, FailureReason.ERROR, f"{e}"), None

        if kind is ResourceKind.PROCESSES and len(snapshot) == 0:
            return AttemptFailure(strategy.name, FailureReason.EMPTY, "no processes"), None
        return None, snapshot
