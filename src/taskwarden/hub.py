"""Fan-out of cached snapshots to connected viewers.

One cadence loop per resource kind asks the scheduler for the current
snapshot and pushes it to every session. Successful refreshes are pushed as
soon as they land, and new viewers get whatever is cached on connect.

Pushing never waits on a viewer: sessions buffer outbound messages and drop
the oldest when a slow reader falls behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from taskwarden.models import ResourceKind

if TYPE_CHECKING:
    from taskwarden.cache import RefreshScheduler
    from taskwarden.config import Config
    from taskwarden.session import ViewerSession

log = structlog.get_logger()


class BroadcastHub:
    """Pushes snapshots to all registered viewer sessions."""

    def __init__(
        self,
        scheduler: RefreshScheduler,
        *,
        intervals: Mapping[ResourceKind, float],
    ) -> None:
        self.scheduler = scheduler
        self._intervals = dict(intervals)
        self._sessions: dict[str, ViewerSession] = {}
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_config(cls, config: Config, scheduler: RefreshScheduler) -> BroadcastHub:
        return cls(
            scheduler,
            intervals={kind: config.interval_for(kind.value) for kind in ResourceKind},
        )

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def sessions(self) -> list[ViewerSession]:
        return list(self._sessions.values())

    async def start(self) -> None:
        """Start one cadence loop per resource kind."""
        if self._tasks:
            return
        self.scheduler.add_listener(self._on_refresh)
        for kind in ResourceKind:
            self._tasks.append(
                asyncio.create_task(self._cadence_loop(kind), name=f"broadcast-{kind.value}")
            )
        log.info(
            "broadcast_started",
            intervals={kind.value: interval for kind, interval in self._intervals.items()},
        )

    async def stop(self) -> None:
        """Stop the cadence loops. In-flight refreshes are left alone."""
        self.scheduler.remove_listener(self._on_refresh)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("broadcast_stopped")

    def register(self, session: ViewerSession) -> None:
        """Add a session and push whatever is cached right away (stale or not)."""
        self._sessions[session.session_id] = session
        for kind in ResourceKind:
            payload = self.scheduler.get(kind)
            session.push_snapshot(kind, payload, self.scheduler.cache.version(kind))
        log.info("viewer_registered", session=session.session_id, sessions=len(self._sessions))

    def deregister(self, session: ViewerSession) -> None:
        if self._sessions.pop(session.session_id, None) is not None:
            log.info(
                "viewer_deregistered", session=session.session_id, sessions=len(self._sessions)
            )

    def broadcast(self, kind: ResourceKind, payload: Any, version: int) -> int:
        """Push a snapshot to every active session. Returns how many received it."""
        delivered = 0
        for session in list(self._sessions.values()):
            if not session.active:
                self.deregister(session)
                continue
            if session.push_snapshot(kind, payload, version):
                delivered += 1
        return delivered

    def _on_refresh(self, kind: ResourceKind, payload: Any, version: int) -> None:
        self.broadcast(kind, payload, version)

    async def _cadence_loop(self, kind: ResourceKind) -> None:
        interval = self._intervals[kind]
        while True:
            try:
                payload = self.scheduler.get(kind)
                self.broadcast(kind, payload, self.scheduler.cache.version(kind))
            except Exception:
                log.exception("broadcast_tick_failed", kind=kind.value)
            await asyncio.sleep(interval)
