"""Stale-while-revalidate cache for system and process snapshots.

SampleCache holds one CacheEntry per resource kind. RefreshScheduler is its
only writer: it decides when an entry is stale, runs at most one refresh per
kind at a time, and keeps the previous payload when a refresh fails.

Reads never block. A stale read returns the cached payload immediately and
starts (or joins) a background refresh. The cache is seeded with placeholder
snapshots, so a read before the first refresh completes still has data.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from taskwarden.fallback import (
    PLACEHOLDER_SOURCE,
    placeholder_process_snapshot,
    placeholder_system_snapshot,
)
from taskwarden.models import ResourceKind

if TYPE_CHECKING:
    from taskwarden.config import Config
    from taskwarden.fallback import FallbackChain

log = structlog.get_logger()

T = TypeVar("T")

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[ResourceKind, Any, int], None]


@dataclass
class CacheEntry(Generic[T]):
    """Latest payload for one resource kind plus freshness metadata."""

    payload: T
    last_fetched_at: float | None = None  # Monotonic; None until the first success
    version: int = 0  # Bumped on every successful replacement
    failures: int = 0  # Consecutive failed refreshes
    started: int = 0  # Refreshes started so far
    task: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()

    def age(self, now: float) -> float:
        if self.last_fetched_at is None:
            return math.inf
        return now - self.last_fetched_at


class SampleCache:
    """Most recent snapshot of each resource kind."""

    def __init__(
        self,
        *,
        system: Any = None,
        processes: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.clock = clock
        self._entries: dict[ResourceKind, CacheEntry[Any]] = {
            ResourceKind.SYSTEM: CacheEntry(
                system if system is not None else placeholder_system_snapshot()
            ),
            ResourceKind.PROCESSES: CacheEntry(
                processes if processes is not None else placeholder_process_snapshot()
            ),
        }

    def entry(self, kind: ResourceKind) -> CacheEntry[Any]:
        return self._entries[kind]

    def peek(self, kind: ResourceKind) -> Any:
        """Current payload without any freshness check."""
        return self._entries[kind].payload

    def version(self, kind: ResourceKind) -> int:
        return self._entries[kind].version

    def age(self, kind: ResourceKind) -> float:
        """Seconds since the last successful refresh (inf if never)."""
        return self._entries[kind].age(self.clock())

    def store(self, kind: ResourceKind, payload: Any) -> int:
        """Replace the payload after a successful refresh. Returns the new version."""
        entry = self._entries[kind]
        entry.payload = payload
        entry.last_fetched_at = self.clock()
        entry.version += 1
        entry.failures = 0
        return entry.version

    def record_failure(self, kind: ResourceKind) -> int:
        """Count a failed refresh; the payload is left untouched."""
        entry = self._entries[kind]
        entry.failures += 1
        return entry.failures


class RefreshScheduler:
    """Decides when to refresh each kind and coalesces concurrent requests.

    Invariant: for each kind at most one refresh task is in flight. Refresh
    tasks belong to the scheduler, not to whoever triggered them, so a
    cancelled waiter never cancels a shared refresh.
    """

    def __init__(
        self,
        cache: SampleCache,
        fetchers: Mapping[ResourceKind, Fetcher],
        *,
        max_ages: Mapping[ResourceKind, float],
        refresh_timeout: float = 15.0,
    ) -> None:
        self.cache = cache
        self._fetchers = dict(fetchers)
        self._max_ages = dict(max_ages)
        self._refresh_timeout = refresh_timeout
        self._listeners: list[Listener] = []

    @classmethod
    def from_config(
        cls, config: Config, cache: SampleCache, chain: FallbackChain
    ) -> RefreshScheduler:
        return cls(
            cache,
            {
                ResourceKind.SYSTEM: chain.fetch_system,
                ResourceKind.PROCESSES: chain.fetch_processes,
            },
            max_ages={
                kind: config.max_age_for(kind.value) for kind in ResourceKind
            },
            refresh_timeout=config.cache.refresh_timeout,
        )

    def add_listener(self, listener: Listener) -> None:
        """Call `listener(kind, payload, version)` after every successful refresh."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def max_age(self, kind: ResourceKind) -> float:
        return self._max_ages[kind]

    def in_flight(self, kind: ResourceKind) -> bool:
        return self.cache.entry(kind).in_flight

    def get(self, kind: ResourceKind, max_age: float | None = None) -> Any:
        """Return the cached payload immediately.

        If it is older than `max_age` (default: the kind's configured budget),
        a background refresh is started unless one is already running.
        """
        entry = self.cache.entry(kind)
        budget = self._max_ages[kind] if max_age is None else max_age
        if self.cache.age(kind) > budget and not entry.in_flight:
            self._start(kind)
        return entry.payload

    async def refresh(self, kind: ResourceKind, *, force: bool = False) -> Any:
        """Wait for a refresh of `kind` to settle and return the cached payload.

        Without `force`, an in-flight refresh is joined. With `force`, the
        refresh waited on is guaranteed to have started after this call: an
        older in-flight refresh is allowed to finish first, then a new one is
        started. Concurrent forced callers share that new refresh.

        On failure the previous payload is returned.
        """
        entry = self.cache.entry(kind)
        ticket = entry.started

        while True:
            if entry.in_flight:
                task = entry.task
                assert task is not None
                # asyncio.wait never cancels the task when this waiter is cancelled
                await asyncio.wait({task})
                if not force or entry.started > ticket:
                    return entry.payload
                continue
            if force and entry.started > ticket:
                # A refresh that started after this call has already finished
                return entry.payload
            await asyncio.wait({self._start(kind)})
            return entry.payload

    async def close(self) -> None:
        """Cancel in-flight refreshes (daemon shutdown only)."""
        tasks = []
        for kind in ResourceKind:
            entry = self.cache.entry(kind)
            if entry.in_flight and entry.task is not None:
                entry.task.cancel()
                tasks.append(entry.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start(self, kind: ResourceKind) -> asyncio.Task:
        entry = self.cache.entry(kind)
        entry.started += 1
        task = asyncio.create_task(self._run(kind), name=f"refresh-{kind.value}")
        entry.task = task
        return task

    async def _run(self, kind: ResourceKind) -> None:
        entry = self.cache.entry(kind)
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            payload = await asyncio.wait_for(
                self._fetchers[kind](), timeout=self._refresh_timeout
            )
        except asyncio.TimeoutError:
            failures = self.cache.record_failure(kind)
            log.warning(
                "refresh_timeout",
                kind=kind.value,
                timeout=self._refresh_timeout,
                consecutive_failures=failures,
            )
            return
        except Exception as e:
            failures = self.cache.record_failure(kind)
            log.warning(
                "refresh_failed",
                kind=kind.value,
                error=str(e),
                consecutive_failures=failures,
            )
            return
        finally:
            entry.task = None

        placeholder = getattr(payload, "source", None) == PLACEHOLDER_SOURCE
        if placeholder and entry.last_fetched_at is not None:
            # Every real strategy failed; keep serving the last real snapshot
            failures = self.cache.record_failure(kind)
            log.warning(
                "refresh_degraded",
                kind=kind.value,
                kept_version=entry.version,
                consecutive_failures=failures,
            )
            return

        version = self.cache.store(kind, payload)
        log.debug(
            "cache_refreshed",
            kind=kind.value,
            version=version,
            source=getattr(payload, "source", None),
            elapsed_ms=round((loop.time() - started) * 1000, 1),
        )
        for listener in list(self._listeners):
            try:
                listener(kind, payload, version)
            except Exception:
                log.exception("refresh_listener_failed", kind=kind.value)
