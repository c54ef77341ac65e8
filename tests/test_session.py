"""Tests for per-viewer session state (no real socket)."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import make_entry, make_process_snapshot, wait_until

from taskwarden import protocol
from taskwarden.models import ResourceKind
from taskwarden.session import ViewerSession


def make_session(outbox_size: int = 4, **kwargs) -> ViewerSession:
    writer = MagicMock()
    writer.is_closing.return_value = False
    defaults = {
        "hub": MagicMock(),
        "pipeline": MagicMock(),
        "scheduler": MagicMock(),
        "health": lambda: protocol.health_message(sessions=1, uptime=3.0),
    }
    defaults.update(kwargs)
    return ViewerSession(MagicMock(), writer, outbox_size=outbox_size, **defaults)


def drain(session: ViewerSession) -> list[dict]:
    messages = list(session._outbox)
    session._outbox.clear()
    return messages


class TestOutbox:
    def test_full_outbox_drops_oldest_snapshot(self) -> None:
        session = make_session(outbox_size=3)
        snapshot = make_process_snapshot(make_entry())
        for version in range(1, 6):
            assert session.push_snapshot(ResourceKind.PROCESSES, snapshot, version)

        assert session.dropped == 2
        assert [m["version"] for m in drain(session)] == [3, 4, 5]

    def test_kill_replies_survive_a_full_outbox(self) -> None:
        session = make_session(outbox_size=2)
        snapshot = make_process_snapshot(make_entry())

        session.push(protocol.kill_ack_message(55, "abc"))
        for version in range(1, 4):
            session.push_snapshot(ResourceKind.PROCESSES, snapshot, version)
        session.push({"type": "kill_outcome", "pid": 55, "request_id": "abc"})
        session.push_snapshot(ResourceKind.SYSTEM, snapshot, 1)

        messages = drain(session)
        assert [m["type"] for m in messages] == [
            "kill_ack", "process_list", "kill_outcome", "system_info",
        ]  # fmt: skip
        assert messages[1]["version"] == 3
        assert session.dropped == 2

    def test_control_messages_are_not_bounded(self) -> None:
        session = make_session(outbox_size=1)
        for i in range(4):
            session.push({"type": "error", "message": str(i)})

        assert session.dropped == 0
        assert [m["message"] for m in drain(session)] == ["0", "1", "2", "3"]

    def test_push_after_close_is_refused(self) -> None:
        session = make_session()
        session.active = False
        assert session.push({"type": "error", "message": "late"}) is False

    def test_snapshot_version_deduplicated(self) -> None:
        session = make_session()
        snapshot = make_process_snapshot(make_entry())

        assert session.push_snapshot(ResourceKind.PROCESSES, snapshot, 1)
        assert not session.push_snapshot(ResourceKind.PROCESSES, snapshot, 1)
        assert session.push_snapshot(ResourceKind.PROCESSES, snapshot, 2)

        messages = drain(session)
        assert [m["type"] for m in messages] == ["process_list", "process_list"]
        assert [m["version"] for m in messages] == [1, 2]


class TestDispatch:
    def test_health_probe(self) -> None:
        session = make_session()
        session.handle_message({"type": "health"})
        assert drain(session) == [{"type": "health", "status": "ok", "sessions": 1, "uptime": 3.0}]

    def test_unknown_type_gets_error(self) -> None:
        session = make_session()
        session.handle_message({"type": "reboot"})
        [reply] = drain(session)
        assert reply["type"] == "error"
        assert "reboot" in reply["message"]

    def test_invalid_line_gets_error(self) -> None:
        session = make_session()
        session._handle_line(b"not json\n")
        [reply] = drain(session)
        assert reply["type"] == "error"
        assert "invalid message" in reply["message"]

    def test_unknown_refresh_kind_gets_error(self) -> None:
        session = make_session()
        session.handle_message({"type": "refresh", "kind": "disks"})
        [reply] = drain(session)
        assert reply["type"] == "error"

    @pytest.mark.asyncio
    async def test_kill_runs_as_session_task(self) -> None:
        gate = asyncio.Event()
        seen = []

        async def execute(request, respond):
            seen.append(request)
            await gate.wait()

        pipeline = MagicMock()
        pipeline.execute = execute
        session = make_session(pipeline=pipeline)

        session.handle_message({"type": "kill", "pid": 55, "request_id": "abc"})
        await asyncio.sleep(0)

        assert session.pending_kills == 1
        assert seen[0].pid == 55
        assert seen[0].request_id == "abc"
        assert seen[0].session_id == session.session_id

        gate.set()
        await wait_until(lambda: session.pending_kills == 0)

    @pytest.mark.asyncio
    async def test_close_cancels_pending_kills(self) -> None:
        async def execute(request, respond):
            await asyncio.sleep(10)

        pipeline = MagicMock()
        pipeline.execute = execute
        hub = MagicMock()
        session = make_session(pipeline=pipeline, hub=hub)
        session._writer.wait_closed = MagicMock(return_value=asyncio.sleep(0))

        session.handle_message({"type": "kill", "pid": 55})
        await asyncio.sleep(0)
        await session.close()

        assert session.pending_kills == 0
        assert not session.active
        hub.deregister.assert_called_once_with(session)
        session._writer.close.assert_called_once()
