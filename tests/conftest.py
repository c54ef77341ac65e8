"""Shared test fixtures for taskwarden."""

import asyncio
import tempfile
import time
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from taskwarden.collector import CollectorUnavailable
from taskwarden.config import Config
from taskwarden.models import ProcessEntry, ProcessSnapshot


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104 characters and pytest's tmp_path
    is often longer, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="tw_") as tmpdir:
        yield Path(tmpdir)


def patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at `base_path`."""
    # fmt: off
    for name, value in {
        "config_dir": base_path / "config",
        "state_dir": base_path / "state",
        "runtime_dir": base_path / "run",
    }.items():
        stack.enter_context(patch.object(
            Config, name, new_callable=lambda v=value: property(lambda self: v)
        ))
    # fmt: on


@pytest.fixture
def patched_config_paths(short_tmp_path: Path) -> Iterator[Path]:
    """Config paths redirected into a short temporary directory."""
    with ExitStack() as stack:
        patch_config_paths(stack, short_tmp_path)
        yield short_tmp_path


def make_entry(
    pid: int = 100,
    name: str = "worker",
    cpu: float = 1.0,
    memory: float = 0.5,
    user: str = "alice",
    killable: bool = True,
) -> ProcessEntry:
    """Create a ProcessEntry for testing."""
    return ProcessEntry(
        pid=pid,
        name=name,
        cpu_percent=cpu,
        memory_percent=memory,
        user=user,
        killable=killable,
    )


def make_process_snapshot(*entries: ProcessEntry, source: str = "psutil") -> ProcessSnapshot:
    """Create a ProcessSnapshot (sorted, deduplicated) from entries."""
    return ProcessSnapshot.from_entries(entries, top_n=50, source=source)


def raw_system(cpu: float = 42.7, cores=(10, 95), total=1000, used=600, free=400) -> dict:
    """Raw collector sample in the shape SystemSnapshot.from_raw accepts."""
    return {
        "cpu": cpu,
        "cores": [{"load": load} for load in cores],
        "mem": {"total": total, "used": used, "free": free},
        "captured_at": time.time(),
    }


class FakeCollector:
    """Stands in for SystemCollector.

    Fails the first `fail_system` / `fail_processes` calls with
    CollectorUnavailable, then returns the configured raw data.
    """

    def __init__(
        self,
        *,
        system: dict[str, Any] | None = None,
        processes: list[dict[str, Any]] | None = None,
        fail_system: int = 0,
        fail_processes: int = 0,
    ) -> None:
        self.system = system if system is not None else raw_system()
        self.processes = (
            processes
            if processes is not None
            else [
                {"pid": 200, "name": "python", "cpu": 12.0, "mem": 1.5, "user": "alice"},
                {"pid": 300, "name": "postgres", "cpu": 30.0, "mem": 4.0, "user": "pg"},
            ]
        )
        self.fail_system = fail_system
        self.fail_processes = fail_processes
        self.system_calls = 0
        self.process_calls = 0

    def collect_system(self) -> dict[str, Any]:
        self.system_calls += 1
        if self.system_calls <= self.fail_system:
            raise CollectorUnavailable("system counters unavailable")
        return dict(self.system)

    def collect_processes(self) -> list[dict[str, Any]]:
        self.process_calls += 1
        if self.process_calls <= self.fail_processes:
            raise CollectorUnavailable("process table unavailable")
        return [dict(p) for p in self.processes]


class FakeRunner:
    """Stands in for run_command: returns canned output and records argv."""

    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.calls: list[list[str]] = []

    async def __call__(self, argv: list[str], timeout: float) -> str:
        self.calls.append(list(argv))
        if self.error is not None:
            raise self.error
        return self.output
