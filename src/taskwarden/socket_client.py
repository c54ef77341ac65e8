"""Client side of the daemon's JSON-lines socket protocol."""

from __future__ import annotations

import asyncio
import json
import secrets
from pathlib import Path
from typing import Any

from taskwarden import protocol
from taskwarden.models import KillOutcome


class SocketClient:
    """One connection to the taskwarden daemon.

    The client never reconnects on its own; callers (the CLI, the TUI) decide
    what a failed connect means for them.

    Each kill request carries a random request id. Whoever is reading
    (read_message) resolves the matching waiter when the kill_outcome arrives,
    and kill() stops waiting after a bounded time even if the daemon answers
    later.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._pending: dict[str, asyncio.Future[KillOutcome]] = {}

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def pending_kills(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """Open the connection.

        Raises:
            FileNotFoundError: No socket file, so no daemon is listening
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"No daemon socket at {self.socket_path}")
        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        """Close the connection and fail any kill still waiting on it."""
        self._fail_pending("disconnected from daemon")
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def close(self) -> None:
        """Close the transport without waiting.

        A reader blocked in read_message() wakes up with ConnectionError.
        """
        if self._writer:
            self._writer.close()

    async def read_message(self, timeout: float = 1.0) -> dict[str, Any]:
        """Next message from the daemon.

        kill_outcome messages also resolve the matching pending kill() call.

        Raises:
            ConnectionError: Not connected, or the daemon closed the connection
            TimeoutError: Nothing arrived within `timeout` seconds
            json.JSONDecodeError: The line was not valid JSON
        """
        if not self._reader:
            raise ConnectionError("not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            self._fail_pending("connection closed by daemon")
            raise ConnectionError("daemon closed the connection")

        message = json.loads(line.decode())
        if message.get("type") == protocol.KILL_OUTCOME:
            future = self._pending.get(message.get("request_id"))
            if future is not None and not future.done():
                future.set_result(KillOutcome.from_dict(message))
        return message

    async def send_message(self, msg: dict[str, Any]) -> None:
        """Write one JSON line.

        Raises:
            ConnectionError: Not connected, or the write failed
        """
        if not self.connected:
            raise ConnectionError("not connected")
        try:
            self._writer.write(protocol.encode(msg))
            await self._writer.drain()
        except OSError as e:
            raise ConnectionError(f"send failed: {e}") from e

    async def request_refresh(self, kind: str) -> None:
        """Ask the daemon to refresh `kind` ("system" or "processes") now."""
        await self.send_message({"type": protocol.REFRESH, "kind": kind})

    async def kill(self, pid: int, timeout: float = 5.0, *, read: bool = False) -> KillOutcome:
        """Request termination of `pid` and wait for the outcome.

        Args:
            pid: Process to terminate
            timeout: Max seconds to wait for the daemon's final outcome
            read: Drive read_message() here. Use when nothing else is reading
                (one-shot CLI use); leave False when a read loop is running.

        Returns:
            The daemon's outcome, or a failed outcome on timeout/disconnect.
        """
        request_id = secrets.token_hex(8)
        future: asyncio.Future[KillOutcome] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send_message({"type": protocol.KILL, "pid": pid, "request_id": request_id})
            outcome = await asyncio.wait_for(self._await_outcome(future, read), timeout=timeout)
        except (TimeoutError, asyncio.TimeoutError):
            return KillOutcome.failed(pid, "timed out waiting for daemon", request_id)
        except ConnectionError as e:
            return KillOutcome.failed(pid, f"connection lost: {e}", request_id)
        finally:
            self._pending.pop(request_id, None)

        if outcome.pid is None:
            # Failed locally by _fail_pending, which doesn't know the pid
            return KillOutcome.failed(pid, outcome.reason, request_id)
        return outcome

    async def probe_health(self, timeout: float = 2.0) -> dict[str, Any]:
        """Send a liveness probe and return the daemon's health reply.

        Must not be used while another task is reading.

        Raises:
            TimeoutError: No health reply within `timeout`.
            ConnectionError: If connection is lost.
        """
        await self.send_message({"type": protocol.HEALTH})
        return await self.wait_for_type(protocol.HEALTH, timeout=timeout)

    async def wait_for_type(self, msg_type: str, timeout: float = 5.0) -> dict[str, Any]:
        """Read until a message of `msg_type` arrives, discarding others.

        Raises:
            TimeoutError: Nothing matching within `timeout`.
            ConnectionError: If connection is lost.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(f"No {msg_type} message within {timeout}s")
            message = await self.read_message(timeout=remaining)
            if message.get("type") == msg_type:
                return message

    async def _await_outcome(self, future: asyncio.Future[KillOutcome], read: bool) -> KillOutcome:
        if read:
            while not future.done():
                try:
                    await self.read_message(timeout=1.0)
                except (TimeoutError, asyncio.TimeoutError):
                    continue
                except ValueError:
                    # Malformed line; the outcome may still follow
                    continue
        return await future

    def _fail_pending(self, reason: str) -> None:
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result(KillOutcome.failed(None, reason, request_id))
