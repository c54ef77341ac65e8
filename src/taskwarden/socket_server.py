"""Unix socket endpoint for viewers.

Every accepted connection is wrapped in a ViewerSession, which registers
with the BroadcastHub and receives pushed snapshots from then on. Requests
a viewer may send, and the replies it gets, are described in
taskwarden.protocol.
"""

from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from taskwarden.protocol import health_message
from taskwarden.session import ViewerSession

if TYPE_CHECKING:
    from taskwarden.cache import RefreshScheduler
    from taskwarden.hub import BroadcastHub
    from taskwarden.killer import KillPipeline

log = structlog.get_logger()

# Viewers may run as a different user than the daemon
SOCKET_MODE = stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO


class SocketServer:
    """Accepts viewer connections and tracks their sessions."""

    def __init__(
        self,
        socket_path: Path,
        *,
        hub: BroadcastHub,
        pipeline: KillPipeline,
        scheduler: RefreshScheduler,
        outbox_size: int = 16,
    ) -> None:
        self.socket_path = socket_path
        self.hub = hub
        self.pipeline = pipeline
        self.scheduler = scheduler
        self._outbox_size = outbox_size
        self._server: asyncio.Server | None = None
        self._sessions: set[ViewerSession] = set()
        self._listening_since: float | None = None

    @property
    def has_clients(self) -> bool:
        return bool(self._sessions)

    @property
    def client_count(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        """Listen on the socket path, replacing a file left by an earlier run."""
        self.socket_path.unlink(missing_ok=True)
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(self._serve, path=str(self.socket_path))
        os.chmod(self.socket_path, SOCKET_MODE)

        self._listening_since = asyncio.get_running_loop().time()
        log.info("socket_listening", path=str(self.socket_path))

    async def stop(self) -> None:
        """Close every session, stop listening and remove the socket file."""
        self._listening_since = None

        sessions, self._sessions = list(self._sessions), set()
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        self.socket_path.unlink(missing_ok=True)
        log.info("socket_closed", sessions_closed=len(sessions))

    def health(self) -> dict[str, Any]:
        """Reply to a viewer's health check."""
        uptime = 0.0
        if self._listening_since is not None:
            uptime = asyncio.get_running_loop().time() - self._listening_since
        return health_message(sessions=len(self._sessions), uptime=uptime)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = ViewerSession(
            reader,
            writer,
            hub=self.hub,
            pipeline=self.pipeline,
            scheduler=self.scheduler,
            health=self.health,
            outbox_size=self._outbox_size,
        )
        self._sessions.add(session)
        log.info("viewer_connected", session=session.session_id, viewers=len(self._sessions))
        try:
            await session.run()
        finally:
            self._sessions.discard(session)
            log.info("viewer_disconnected", session=session.session_id, viewers=len(self._sessions))
