"""Textual dashboard for taskwarden.

The dashboard is a viewer like any other socket client: it renders the
snapshots the daemon pushes and forwards kill/refresh requests. It never
samples the OS itself, so what it shows is exactly what every other viewer
sees.
"""

import asyncio
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Input, Label, RichLog, Static

from taskwarden import protocol
from taskwarden.config import Config, TUIConfig
from taskwarden.formatting import (
    SORT_FIELDS,
    filter_processes,
    format_age,
    format_bytes,
    format_cpu_info,
    format_percent,
    load_bar,
    sort_processes,
)
from taskwarden.models import KillOutcome, ResourceKind
from taskwarden.socket_client import SocketClient


def load_style(load: float) -> str:
    """Color for a 0-100 load value."""
    if load >= 90:
        return "bold red"
    if load >= 60:
        return "yellow"
    return "green"


def backoff_delays(tui: TUIConfig) -> Iterator[float]:
    """Reconnect delays: initial, then multiplied each attempt up to the max."""
    delay = tui.reconnect_initial_delay
    while True:
        yield delay
        delay = min(delay * tui.reconnect_multiplier, tui.reconnect_max_delay)


class HeaderBar(Static):
    """CPU and memory gauges, CPU model line, and one small bar per core."""

    DEFAULT_CSS = """
    HeaderBar {
        height: 7;
        padding: 0 1;
        border: round green;
        border-title-align: left;
    }

    HeaderBar.offline {
        border: round $error;
    }

    HeaderBar #gauges {
        height: 1;
        width: 100%;
    }

    HeaderBar #usage {
        width: auto;
    }

    HeaderBar #freshness {
        width: 1fr;
        text-align: right;
        color: $text-muted;
    }

    HeaderBar #cpu-info {
        height: 1;
        color: $text-muted;
    }

    HeaderBar #cores {
        height: 3;
    }
    """

    CORES_PER_LINE = 4

    online: reactive[bool] = reactive(False)

    def compose(self) -> ComposeResult:
        with Horizontal(id="gauges"):
            yield Label("", id="usage")
            yield Label("", id="freshness")
        yield Label("", id="cpu-info")
        yield Label("", id="cores")

    def on_mount(self) -> None:
        self.border_title = "SYSTEM"
        self.set_disconnected()

    def watch_online(self, online: bool) -> None:
        self.set_class(not online, "offline")

    def update_system(self, snapshot: dict[str, Any]) -> None:
        """Render a system_info snapshot (wire form)."""
        self.online = True
        cpu = snapshot.get("cpu", {})
        memory = snapshot.get("memory", {})
        load = float(cpu.get("load", 0.0))
        mem_percent = float(memory.get("used_percent", 0.0))

        usage = Text("CPU ")
        usage.append(load_bar(load), style=load_style(load))
        usage.append(f" {format_percent(load)}   MEM ")
        usage.append(load_bar(mem_percent), style=load_style(mem_percent))
        usage.append(
            f" {format_bytes(memory.get('used', 0))} of {format_bytes(memory.get('total', 0))}"
        )

        freshness = f"{snapshot.get('source', '?')} · {format_age(snapshot.get('captured_at', 0))}"

        cores = Text()
        for index, core in enumerate(cpu.get("cores", [])):
            core_load = float(core.get("load", 0.0))
            if index and index % self.CORES_PER_LINE == 0:
                cores.append("\n")
            cores.append(f"#{index:<2} ")
            cores.append(load_bar(core_load, width=8), style=load_style(core_load))
            cores.append(f" {core_load:5.1f}  ")

        self._set_label("#usage", usage)
        self._set_label("#freshness", freshness)
        self._set_label("#cpu-info", format_cpu_info(cpu) or "CPU details unavailable")
        self._set_label("#cores", cores)

    def set_disconnected(self) -> None:
        self.online = False
        self._set_label("#usage", "Waiting for daemon...")

    def _set_label(self, selector: str, content: Any) -> None:
        try:
            self.query_one(selector, Label).update(content)
        except NoMatches:
            pass


class ProcessTable(Static):
    """Process list with a search box and sortable columns.

    The highlighted row is the kill target. Rows are filtered and sorted
    locally; the daemon always sends its top-N by CPU.
    """

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: round $primary;
        border-title-align: left;
    }

    ProcessTable.offline {
        border: round $error;
    }

    ProcessTable #filter {
        height: 3;
        margin: 0 0 1 0;
    }

    ProcessTable DataTable {
        width: 100%;
        height: 1fr;
    }
    """

    BINDINGS = [("escape", "focus_table", "Back to table")]

    COLUMNS = {"pid": "PID", "name": "Process", "cpu": "CPU", "memory": "MEM", "user": "User"}

    def __init__(self, max_rows: int = 50, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._max_rows = max_rows
        self._table: DataTable | None = None
        self._snapshot: dict[str, Any] | None = None
        self._rows: dict[int, dict[str, Any]] = {}
        self.filter_text = ""
        self.sort_field = "cpu"
        self.descending = True

    def compose(self) -> ComposeResult:
        yield Input(placeholder="Search by name, pid or user  (/)", id="filter")
        yield DataTable(id="process-table", zebra_stripes=True, cursor_type="row")

    def on_mount(self) -> None:
        self._table = self.query_one("#process-table", DataTable)
        self._add_columns()
        self._table.focus()
        self.set_disconnected()

    def update_processes(self, snapshot: dict[str, Any]) -> None:
        """Show a new process_list snapshot with the current filter and sort."""
        self._snapshot = snapshot
        self.remove_class("offline")
        self._render_rows()

    def set_filter(self, text: str) -> None:
        self.filter_text = text
        self._render_rows()

    def sort_by(self, field: str) -> None:
        """Sort on `field`; choosing the current column again flips the direction."""
        if field not in SORT_FIELDS:
            raise ValueError(f"not a sortable column: {field!r}")
        if field == self.sort_field:
            self.descending = not self.descending
        else:
            self.sort_field = field
            self.descending = True
        self._render_rows()

    def cycle_sort(self) -> None:
        """Move to the next sortable column, descending."""
        index = SORT_FIELDS.index(self.sort_field)
        self.sort_field = SORT_FIELDS[(index + 1) % len(SORT_FIELDS)]
        self.descending = True
        self._render_rows()

    def toggle_direction(self) -> None:
        self.descending = not self.descending
        self._render_rows()

    def action_focus_table(self) -> None:
        if self._table is not None:
            self._table.focus()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "filter":
            self.set_filter(event.value)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.action_focus_table()

    def on_data_table_header_selected(self, event: DataTable.HeaderSelected) -> None:
        self.sort_by(str(event.column_key.value))

    def _add_columns(self) -> None:
        assert self._table is not None
        arrow = " ↓" if self.descending else " ↑"
        for field, label in self.COLUMNS.items():
            self._table.add_column(label + (arrow if field == self.sort_field else ""), key=field)

    def _render_rows(self) -> None:
        """Rebuild the table, keeping the cursor on the same pid if still listed."""
        if self._table is None or self._snapshot is None:
            return
        keep = self.selected_pid()

        listed = self._snapshot.get("processes", [])
        rows = filter_processes(listed, self.filter_text)
        rows = sort_processes(rows, self.sort_field, descending=self.descending)[: self._max_rows]
        self._rows = {proc["pid"]: proc for proc in rows}

        self._table.clear(columns=True)
        self._add_columns()
        for proc in rows:
            self._table.add_row(*self._cells(proc), key=str(proc["pid"]))

        title = (
            f"PROCESSES {len(rows)}/{self._snapshot.get('total_count', 0)} "
            f"via {self._snapshot.get('source', '?')}"
        )
        if self.filter_text:
            title += f" matching {self.filter_text!r}"
        self.border_title = title
        if keep in self._rows:
            self._table.move_cursor(row=self._table.get_row_index(str(keep)))

    @staticmethod
    def _cells(proc: dict[str, Any]) -> list[Text]:
        # Protected processes are dimmed; they can't be selected for a kill
        dim = "" if proc.get("killable", True) else "dim"
        cpu = float(proc.get("cpu", 0.0))
        return [
            Text(str(proc["pid"]), style=dim),
            Text(str(proc["name"]), style=dim),
            Text(format_percent(cpu), style=dim or load_style(min(cpu, 100.0))),
            Text(format_percent(proc.get("memory")), style=dim),
            Text(str(proc.get("user", "")), style=dim),
        ]

    def selected_pid(self) -> int | None:
        """Pid of the highlighted row, if any."""
        if self._table is None or self._table.row_count == 0:
            return None
        row_key, _ = self._table.coordinate_to_cell_key(self._table.cursor_coordinate)
        return int(row_key.value) if row_key.value is not None else None

    def entry(self, pid: int) -> dict[str, Any] | None:
        return self._rows.get(pid)

    def set_disconnected(self) -> None:
        self.add_class("offline")
        self.border_title = "PROCESSES (no data)"


class ConfirmKillScreen(ModalScreen[bool]):
    """Asks before a process is terminated. Dismisses with True to go ahead."""

    DEFAULT_CSS = """
    ConfirmKillScreen {
        align: center middle;
    }

    ConfirmKillScreen #dialog {
        width: 50;
        height: auto;
        padding: 1 2;
        border: thick $error;
        background: $surface;
    }

    ConfirmKillScreen #buttons {
        height: auto;
        margin-top: 1;
        align-horizontal: right;
    }

    ConfirmKillScreen Button {
        margin-left: 2;
    }
    """

    BINDINGS = [
        ("y", "confirm", "Terminate"),
        ("n", "cancel", "Cancel"),
        ("escape", "cancel", "Cancel"),
    ]

    def __init__(self, pid: int, name: str) -> None:
        super().__init__()
        self.target_pid = pid
        self.process_name = name

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label(f"Terminate {self.process_name} (pid {self.target_pid})?")
            with Horizontal(id="buttons"):
                yield Button("Cancel", id="cancel")
                yield Button("Terminate", variant="error", id="confirm")

    def on_mount(self) -> None:
        self.query_one("#cancel", Button).focus()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "confirm")

    def action_confirm(self) -> None:
        self.dismiss(True)

    def action_cancel(self) -> None:
        self.dismiss(False)


class ActivityLog(Static):
    """Connection changes and kill results, newest at the bottom."""

    DEFAULT_CSS = """
    ActivityLog {
        height: 8;
        border: round $primary;
        border-title-align: left;
    }

    ActivityLog RichLog {
        width: 100%;
        height: 100%;
    }
    """

    MAX_ENTRIES = 50

    def compose(self) -> ComposeResult:
        yield RichLog(id="activity-log", markup=True, max_lines=self.MAX_ENTRIES)

    def on_mount(self) -> None:
        self.border_title = "ACTIVITY"

    def add_entry(self, message: str, color: str = "green") -> None:
        try:
            log = self.query_one("#activity-log", RichLog)
        except NoMatches:
            return
        log.write(f"[{color}]{datetime.now():%H:%M:%S}[/{color}]  {message}")


class TaskwardenApp(App):
    """Live view of the daemon's system and process snapshots."""

    CSS = """
    Screen {
        layout: vertical;
    }
    """

    TITLE = "taskwarden"

    BINDINGS = [
        ("k", "kill", "Kill selected"),
        ("r", "refresh", "Refresh now"),
        ("slash", "search", "Search"),
        ("s", "cycle_sort", "Sort column"),
        ("d", "reverse_sort", "Reverse sort"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, config: Config | None = None):
        super().__init__()
        self.config = config or Config.load()
        self._client: SocketClient | None = None
        self._connected = False
        self._closing = False
        self._read_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._kill_tasks: set[asyncio.Task] = set()

    def compose(self) -> ComposeResult:
        yield HeaderBar(id="header")
        yield ProcessTable(max_rows=self.config.tui.max_rows, id="main-area")
        yield ActivityLog(id="activity")
        yield Footer()

    def on_mount(self) -> None:
        self._set_status("connecting")
        asyncio.create_task(self._first_connect())

    def on_unmount(self) -> None:
        self._closing = True
        # Closing the transport first wakes a read blocked in readline()
        if self._client is not None:
            self._client.close()
        for task in (self._reconnect_task, self._read_task, *self._kill_tasks):
            if task is not None and not task.done():
                task.cancel()

    def _set_status(self, status: str) -> None:
        self.sub_title = f"daemon: {status}"

    # ─────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────

    def action_kill(self) -> None:
        """Ask the daemon to terminate the highlighted process."""
        if not self._connected or self._client is None:
            self.notify("Not connected to daemon", severity="warning")
            return
        try:
            table = self.query_one("#main-area", ProcessTable)
        except NoMatches:
            return
        pid = table.selected_pid()
        if pid is None:
            return
        entry = table.entry(pid) or {}
        name = entry.get("name", str(pid))
        if not entry.get("killable", True):
            self.notify(f"{name} is protected", severity="warning")
            return

        self.push_screen(
            ConfirmKillScreen(pid, name),
            lambda confirmed: self._start_kill(pid, name, bool(confirmed)),
        )

    def _start_kill(self, pid: int, name: str, confirmed: bool) -> None:
        if not confirmed:
            self._log(f"Kept {name} ({pid})", "dim")
            return
        if not self._connected or self._client is None:
            self.notify("Not connected to daemon", severity="warning")
            return
        self._log(f"Terminating {name} ({pid})...", "yellow")
        task = asyncio.create_task(self._kill(pid))
        self._kill_tasks.add(task)
        task.add_done_callback(self._kill_tasks.discard)

    def action_search(self) -> None:
        try:
            self.query_one("#filter", Input).focus()
        except NoMatches:
            pass

    def action_cycle_sort(self) -> None:
        self._with_table(ProcessTable.cycle_sort)

    def action_reverse_sort(self) -> None:
        self._with_table(ProcessTable.toggle_direction)

    def _with_table(self, method: Callable[[ProcessTable], None]) -> None:
        try:
            table = self.query_one("#main-area", ProcessTable)
        except NoMatches:
            return
        method(table)

    async def action_refresh(self) -> None:
        """Force a refresh of both snapshots."""
        if not self._connected or self._client is None:
            return
        try:
            await self._client.request_refresh(ResourceKind.SYSTEM.value)
            await self._client.request_refresh(ResourceKind.PROCESSES.value)
        except ConnectionError as e:
            self._mark_disconnected(f"connection lost: {e}")

    async def _kill(self, pid: int) -> None:
        client = self._client
        if client is None:
            return
        # _read_loop delivers the outcome; kill() just waits for it
        outcome = await client.kill(pid, timeout=self.config.kill.client_wait)
        self._report_kill(outcome)

    def _report_kill(self, outcome: KillOutcome) -> None:
        if outcome.succeeded:
            self._log(f"Killed {outcome.pid}: {outcome.reason}")
            self.notify(f"Process {outcome.pid} terminated", severity="information")
        else:
            self._log(f"Kill {outcome.pid} failed: {outcome.reason}", "red")
            self.notify(f"Kill {outcome.pid} failed: {outcome.reason}", severity="error")

    # ─────────────────────────────────────────────────────────────────────
    # Connection
    # ─────────────────────────────────────────────────────────────────────

    async def _connect(self, notify_failure: bool = True) -> bool:
        """One connection attempt. On success the read loop is started.

        Returns:
            Whether the daemon accepted the connection
        """
        if self._client is None:
            self._client = SocketClient(socket_path=self.config.socket_path)

        try:
            await self._client.connect()
        except Exception as e:
            if isinstance(e, FileNotFoundError):
                reason, hint = "socket not found", "Daemon not running. Start it with: taskwarden daemon"
            elif isinstance(e, PermissionError):
                reason, hint = f"permission denied: {e}", f"Socket permission denied: {e}"
            else:
                reason, hint = f"{type(e).__name__}: {e}", f"Could not connect: {e}"
            self._mark_disconnected(reason, reconnect=False)
            if notify_failure:
                self.notify(hint, severity="warning" if reason == "socket not found" else "error")
            return False

        self._connected = True
        self._set_status("live")
        self._log("Connected to daemon")
        self._read_task = asyncio.create_task(self._read_loop())
        return True

    async def _first_connect(self) -> None:
        if not await self._connect(notify_failure=True):
            self._reconnect_task = asyncio.create_task(self._reconnect_with_backoff())

    async def _reconnect_with_backoff(self) -> None:
        for delay in backoff_delays(self.config.tui):
            if self._closing:
                return
            self._set_status(f"reconnecting in {delay:.0f}s")
            # Short sleeps so shutdown isn't held up by a long backoff
            waited = 0.0
            while waited < delay and not self._closing:
                step = min(1.0, delay - waited)
                await asyncio.sleep(step)
                waited += step
            if self._closing:
                return

            if self._client is not None:
                await self._client.disconnect()
                self._client = None
            self._set_status("reconnecting")
            if await self._connect(notify_failure=False):
                self.notify("Reconnected to daemon", severity="information")
                return

    async def _read_loop(self) -> None:
        client = self._client
        try:
            while self._connected and client is not None and not self._closing:
                try:
                    message = await client.read_message(timeout=1.0)
                except TimeoutError:
                    continue
                self._dispatch(message)
        except asyncio.CancelledError:
            pass
        except ConnectionError as e:
            self._mark_disconnected(f"connection lost: {e}")
            self.notify("Lost connection to daemon", severity="warning")
        except Exception as e:
            self._mark_disconnected(f"{type(e).__name__}: {e}")
            self.notify(f"Socket error: {e}", severity="error")

    def _mark_disconnected(self, reason: str | None = None, reconnect: bool = True) -> None:
        """Show the offline state and, unless told otherwise, start reconnecting.

        Only one reconnect loop runs at a time.
        """
        was_connected = self._connected
        self._connected = False
        self._set_status("disconnected")
        if was_connected and reason:
            self._log(f"Disconnected: {reason}", "red")
        for selector, widget_type in (("#header", HeaderBar), ("#main-area", ProcessTable)):
            try:
                self.query_one(selector, widget_type).set_disconnected()
            except NoMatches:
                pass

        if not reconnect or self._closing:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_with_backoff())

    def _dispatch(self, message: dict[str, Any]) -> None:
        """Route one daemon message to the widget that shows it."""
        msg_type = message.get("type")
        try:
            if msg_type == protocol.SYSTEM_INFO:
                self.query_one("#header", HeaderBar).update_system(message.get("snapshot", {}))
            elif msg_type == protocol.PROCESS_LIST:
                self.query_one("#main-area", ProcessTable).update_processes(
                    message.get("snapshot", {})
                )
            elif msg_type == protocol.ERROR:
                self._log(f"Daemon error: {message.get('message')}", "red")
        except NoMatches:
            pass
        # kill_ack is not shown; kill_outcome resolves the waiting _kill task

    def _log(self, message: str, color: str = "green") -> None:
        try:
            self.query_one("#activity", ActivityLog).add_entry(message, color)
        except NoMatches:
            pass


def run_tui(config: Config | None = None) -> None:
    """Run the dashboard until the user quits."""
    TaskwardenApp(config).run()
