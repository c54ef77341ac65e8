"""Tests for CLI commands."""

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from taskwarden import protocol
from taskwarden.cli import main
from taskwarden.config import Config
from taskwarden.models import KillOutcome, KillStatus

SYSTEM = {
    "cpu": {"load": 42.7, "cores": [{"load": 10.0}, {"load": 95.0}]},
    "memory": {"total": 1000, "used": 600, "free": 400, "used_percent": "60.0"},
    "captured_at": 0,
    "source": "psutil",
}


def process_list(*rows: tuple[int, str, bool]) -> dict:
    return {
        "processes": [
            {"pid": pid, "name": name, "cpu": 5.0, "memory": 1.0, "user": "alice",
             "killable": killable}  # fmt: skip
            for pid, name, killable in rows
        ],
        "total_count": len(rows),
        "captured_at": 0,
        "source": "psutil",
    }


class FakeClient:
    """Stands in for SocketClient; class attributes script the daemon's replies."""

    health: dict = {"type": "health", "status": "ok", "sessions": 1, "uptime": 5.0}
    messages: dict = {}
    outcome: KillOutcome | None = None
    refreshed: list = []
    killed: list = []

    def __init__(self, socket_path) -> None:
        self.socket_path = socket_path

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def probe_health(self, timeout: float) -> dict:
        return self.health

    async def wait_for_type(self, msg_type: str, timeout: float) -> dict:
        return self.messages[msg_type].pop(0)

    async def request_refresh(self, kind: str) -> None:
        self.refreshed.append(kind)

    async def kill(self, pid: int, timeout: float, *, read: bool = False) -> KillOutcome:
        self.killed.append((pid, timeout))
        return self.outcome


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def fake_client(patched_config_paths: Path):
    FakeClient.messages = {}
    FakeClient.refreshed = []
    FakeClient.killed = []
    with patch("taskwarden.socket_client.SocketClient", FakeClient):
        yield FakeClient


class TestStatus:
    def test_no_daemon(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 1
        assert "Daemon not running" in result.output

    def test_healthy(self, runner: CliRunner, fake_client) -> None:
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "1 viewer" in result.output

    def test_unhealthy(self, runner: CliRunner, fake_client) -> None:
        with patch.object(fake_client, "health", {"type": "health", "status": "degraded"}):
            result = runner.invoke(main, ["status"])
        assert result.exit_code == 1
        assert "degraded" in result.output


class TestTop:
    def test_prints_summary_and_table(self, runner: CliRunner, fake_client) -> None:
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": SYSTEM}],
            protocol.PROCESS_LIST: [
                {"type": "process_list", "snapshot": process_list((200, "python", True),
                                                                  (1, "init", False))}  # fmt: skip
            ],
        }
        result = runner.invoke(main, ["top"])

        assert result.exit_code == 0
        assert "CPU 42.7% (2 cores)" in result.output
        assert "Processes: 2 [psutil, never]" in result.output
        lines = result.output.splitlines()
        python_row = next(line for line in lines if "python" in line)
        init_row = next(line for line in lines if "init" in line)
        assert "200" in python_row
        assert not python_row.endswith("*")
        assert init_row.endswith(" *")
        assert fake_client.refreshed == []

    def test_limit(self, runner: CliRunner, fake_client) -> None:
        rows = [(100 + i, f"proc{i}", True) for i in range(5)]
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": SYSTEM}],
            protocol.PROCESS_LIST: [{"type": "process_list", "snapshot": process_list(*rows)}],
        }
        result = runner.invoke(main, ["top", "-n", "2"])

        assert result.exit_code == 0
        assert "proc1" in result.output
        assert "proc2" not in result.output

    def test_refresh_waits_for_new_list(self, runner: CliRunner, fake_client) -> None:
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": SYSTEM}],
            protocol.PROCESS_LIST: [
                {"type": "process_list", "snapshot": process_list((200, "stale", True))},
                {"type": "process_list", "snapshot": process_list((300, "fresh", True))},
            ],
        }
        result = runner.invoke(main, ["top", "--refresh"])

        assert result.exit_code == 0
        assert fake_client.refreshed == ["processes"]
        assert "fresh" in result.output
        assert "stale" not in result.output

    def test_filter_and_sort(self, runner: CliRunner, fake_client) -> None:
        rows = process_list((200, "python", True), (300, "pytest", True), (400, "nginx", True))
        rows["processes"][1]["cpu"] = 50.0
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": SYSTEM}],
            protocol.PROCESS_LIST: [{"type": "process_list", "snapshot": rows}],
        }
        result = runner.invoke(main, ["top", "--filter", "PY", "--sort", "cpu", "--asc"])

        assert result.exit_code == 0
        names = [line.split()[1] for line in result.output.splitlines() if "alice" in line]
        assert names == ["python", "pytest"]

    def test_filter_without_matches(self, runner: CliRunner, fake_client) -> None:
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": SYSTEM}],
            protocol.PROCESS_LIST: [
                {"type": "process_list", "snapshot": process_list((200, "python", True))}
            ],
        }
        result = runner.invoke(main, ["top", "-f", "zzz"])

        assert result.exit_code == 0
        assert "No processes found" in result.output

    def test_shows_cpu_info(self, runner: CliRunner, fake_client) -> None:
        system = {**SYSTEM, "cpu": {**SYSTEM["cpu"], "brand": "AMD Ryzen 7", "speed": 3.8}}
        fake_client.messages = {
            protocol.SYSTEM_INFO: [{"type": "system_info", "snapshot": system}],
            protocol.PROCESS_LIST: [
                {"type": "process_list", "snapshot": process_list((200, "python", True))}
            ],
        }
        result = runner.invoke(main, ["top"])

        assert "AMD Ryzen 7 · 3.80 GHz" in result.output

    def test_rejects_unknown_sort_column(self, runner: CliRunner, fake_client) -> None:
        result = runner.invoke(main, ["top", "--sort", "state"])
        assert result.exit_code == 2

    def test_no_daemon(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["top"])
        assert result.exit_code == 1
        assert "Daemon not running" in result.output


class TestKill:
    def test_success(self, runner: CliRunner, fake_client) -> None:
        fake_client.outcome = KillOutcome(
            pid=200, status=KillStatus.SUCCEEDED, reason="process 200 terminated"
        )
        result = runner.invoke(main, ["kill", "200", "--yes"])

        assert result.exit_code == 0
        assert "process 200 terminated" in result.output
        assert fake_client.killed == [(200, Config().kill.client_wait)]

    def test_failure_exits_nonzero(self, runner: CliRunner, fake_client) -> None:
        fake_client.outcome = KillOutcome.failed(999999, "process 999999 not found")
        result = runner.invoke(main, ["kill", "999999", "--wait", "1.5", "-y"])

        assert result.exit_code == 1
        assert "not found" in result.output
        assert fake_client.killed == [(999999, 1.5)]

    def test_asks_for_confirmation(self, runner: CliRunner, fake_client) -> None:
        fake_client.outcome = KillOutcome(
            pid=200, status=KillStatus.SUCCEEDED, reason="process 200 terminated"
        )
        result = runner.invoke(main, ["kill", "200"], input="y\n")

        assert result.exit_code == 0
        assert "Terminate process 200?" in result.output
        assert fake_client.killed == [(200, Config().kill.client_wait)]

    def test_declined_confirmation_sends_nothing(self, runner: CliRunner, fake_client) -> None:
        result = runner.invoke(main, ["kill", "200"], input="n\n")

        assert result.exit_code == 1
        assert "Aborted" in result.output
        assert fake_client.killed == []

    def test_pid_must_be_integer(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["kill", "abc"])
        assert result.exit_code == 2

    def test_no_daemon(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["kill", "200", "--yes"])
        assert result.exit_code == 1
        assert "Daemon not running" in result.output


class TestConfigCommands:
    def test_show_defaults(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "# Exists: False" in result.output
        assert "[cache]" in result.output
        assert "process_max_age = 4.0" in result.output

    def test_show_custom_values(self, runner: CliRunner, patched_config_paths: Path) -> None:
        config = Config()
        config.collector.top_n = 7
        config.save()

        result = runner.invoke(main, ["config", "show"])
        assert "# Exists: True" in result.output
        assert "top_n = 7" in result.output

    def test_init_creates_once(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["config", "init"])
        assert result.exit_code == 0
        assert Config().config_path.exists()
        assert "Created config" in result.output

        result = runner.invoke(main, ["config", "init"])
        assert "already exists" in result.output

    def test_init_force_overwrites(self, runner: CliRunner, patched_config_paths: Path) -> None:
        path = Config().config_path
        path.parent.mkdir(parents=True)
        path.write_text("[collector]\ntop_n = 3\n")

        result = runner.invoke(main, ["config", "init", "--force"])
        assert result.exit_code == 0
        assert Config.load().collector.top_n == 50

    def test_path(self, runner: CliRunner, patched_config_paths: Path) -> None:
        result = runner.invoke(main, ["config", "path"])
        assert result.exit_code == 0
        assert str(patched_config_paths / "run" / "daemon.sock") in result.output
        assert str(patched_config_paths / "state" / "daemon.log") in result.output


def test_help_lists_commands(runner: CliRunner) -> None:
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("daemon", "tui", "status", "top", "kill", "config"):
        assert command in result.output
