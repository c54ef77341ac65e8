"""Per-connection state for one viewer."""

from __future__ import annotations

import asyncio
import secrets
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from taskwarden import protocol
from taskwarden.models import KillRequest, ResourceKind

if TYPE_CHECKING:
    from taskwarden.cache import RefreshScheduler
    from taskwarden.hub import BroadcastHub
    from taskwarden.killer import KillPipeline

log = structlog.get_logger()


class ViewerSession:
    """One connected viewer.

    Outbound messages go through an outbox drained by a writer task, so push()
    never waits on the peer. At most `outbox_size` snapshot messages are queued;
    past that the oldest queued snapshot is dropped, and since snapshots
    supersede each other the viewer only loses intermediate states. Replies to
    the viewer's own requests (kill_ack, kill_outcome, health, error) are
    never dropped.

    Inbound messages are kill requests, refresh requests and health probes.
    Kill requests run as session-owned tasks and are cancelled on disconnect.
    Cache refreshes are never owned by a session.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        hub: BroadcastHub,
        pipeline: KillPipeline,
        scheduler: RefreshScheduler,
        health: Callable[[], dict[str, Any]],
        outbox_size: int = 16,
    ) -> None:
        self.session_id = secrets.token_hex(4)
        self.active = True
        self._reader = reader
        self._writer = writer
        self._hub = hub
        self._pipeline = pipeline
        self._scheduler = scheduler
        self._health = health
        self._outbox: deque[dict[str, Any]] = deque()
        self._outbox_size = outbox_size
        self._queued_snapshots = 0
        self._ready = asyncio.Event()
        self._delivered: dict[ResourceKind, int] = {}
        self._writer_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self.dropped = 0

    @property
    def pending_kills(self) -> int:
        return len(self._tasks)

    def push(self, message: dict[str, Any]) -> bool:
        """Queue a message for this viewer without waiting. False once closed."""
        if not self.active:
            return False
        if message.get("type") in protocol.SNAPSHOT_MESSAGE_TYPES:
            if self._queued_snapshots >= self._outbox_size:
                self._drop_oldest_snapshot()
            self._queued_snapshots += 1
        self._outbox.append(message)
        self._ready.set()
        return True

    def _drop_oldest_snapshot(self) -> None:
        for index, queued in enumerate(self._outbox):
            if queued.get("type") in protocol.SNAPSHOT_MESSAGE_TYPES:
                del self._outbox[index]
                self._queued_snapshots -= 1
                self.dropped += 1
                log.debug(
                    "viewer_snapshot_dropped", session=self.session_id, dropped=self.dropped
                )
                return

    def push_snapshot(self, kind: ResourceKind, payload: Any, version: int) -> bool:
        """Queue a snapshot unless this viewer already has this version."""
        if self._delivered.get(kind) == version:
            return False
        if self.push(protocol.snapshot_message(kind, payload, version)):
            self._delivered[kind] = version
            return True
        return False

    async def run(self) -> None:
        """Serve the connection until the viewer disconnects."""
        self._writer_task = asyncio.create_task(
            self._write_loop(), name=f"viewer-{self.session_id}-writer"
        )
        self._hub.register(self)
        try:
            while self.active:
                line = await self._reader.readline()
                if not line:
                    break
                self._handle_line(line)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        except (asyncio.LimitOverrunError, ValueError):
            log.warning("viewer_line_too_long", session=self.session_id)
        finally:
            await self.close()

    async def close(self) -> None:
        """Tear down: deregister, cancel session tasks, close the transport."""
        if not self.active and self._writer_task is None:
            return
        self.active = False
        self._hub.deregister(self)

        tasks = list(self._tasks)
        if self._writer_task is not None:
            tasks.append(self._writer_task)
            self._writer_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self._writer.close()
        try:
            await self._writer.wait_closed()
        except Exception:
            pass

    def _handle_line(self, line: bytes) -> None:
        try:
            message = protocol.decode(line)
        except ValueError as e:
            log.warning("invalid_client_message", session=self.session_id, error=str(e))
            self.push(protocol.error_message(f"invalid message: {e}"))
            return
        self.handle_message(message)

    def handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message["type"]

        if msg_type == protocol.KILL:
            request = KillRequest(
                pid=message.get("pid"),
                session_id=self.session_id,
                request_id=str(message.get("request_id") or secrets.token_hex(8)),
            )
            self._spawn(self._pipeline.execute(request, self.push), f"kill-{request.request_id}")
        elif msg_type == protocol.REFRESH:
            try:
                kind = ResourceKind(message.get("kind"))
            except ValueError:
                self.push(protocol.error_message(f"unknown resource kind: {message.get('kind')!r}"))
                return
            self._spawn(self._refresh(kind), f"refresh-{kind.value}-{self.session_id}")
        elif msg_type == protocol.HEALTH:
            self.push(self._health())
        else:
            log.warning("invalid_client_message", session=self.session_id, type=msg_type)
            self.push(protocol.error_message(f"unknown message type: {msg_type!r}"))

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, kind: ResourceKind) -> None:
        payload = await self._scheduler.refresh(kind, force=True)
        version = self._scheduler.cache.version(kind)
        # Reply even if the refresh failed or was already broadcast
        if self.push(protocol.snapshot_message(kind, payload, version)):
            self._delivered[kind] = version

    async def _write_loop(self) -> None:
        try:
            while True:
                while not self._outbox:
                    self._ready.clear()
                    await self._ready.wait()
                message = self._outbox.popleft()
                if message.get("type") in protocol.SNAPSHOT_MESSAGE_TYPES:
                    self._queued_snapshots -= 1
                self._writer.write(protocol.encode(message))
                await self._writer.drain()
        except (ConnectionError, OSError) as e:
            log.debug("viewer_write_failed", session=self.session_id, error=str(e))
            self.active = False
