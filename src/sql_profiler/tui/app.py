"""Live query feed for sql-profiler.

Philosophy: TUI = real-time window into the daemon. Nothing more.
- Display what the daemon sends via socket
- Commands go to the daemon; the TUI never talks to SQL Server itself
- Single screen: status, feed, selected query, activity
"""

import asyncio
from datetime import datetime
from typing import Any

from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.css.query import NoMatches
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Input, Label, RichLog, Static

from sql_profiler.config import Config
from sql_profiler.filters import FilterCondition, matches_all, parse_condition
from sql_profiler.formatting import extract_time, format_count, format_ms, one_line_sql
from sql_profiler.socket_client import SocketClient

# (column key, label)
COLUMNS = (
    ("time", "Time"),
    ("session", "SPID"),
    ("database", "Database"),
    ("status", "Status"),
    ("duration", "Duration"),
    ("cpu", "CPU"),
    ("reads", "Reads"),
    ("writes", "Writes"),
    ("rows", "Rows"),
    ("sql", "SQL"),
)


def parse_filter_text(text: str) -> list[FilterCondition]:
    """Parse a ';'-separated list of conditions from the filter input."""
    return [parse_condition(part) for part in text.split(";") if part.strip()]


class HeaderBar(Static):
    """Connection and capture state."""

    DEFAULT_CSS = """
    HeaderBar {
        height: 3;
        padding: 0 1;
        border: solid $error;
        border-title-align: left;
    }

    HeaderBar Horizontal {
        height: 1;
        width: 100%;
    }

    HeaderBar #status-left {
        width: 1fr;
    }

    HeaderBar #status-right {
        width: auto;
    }
    """

    connected: reactive[bool] = reactive(False)
    capturing: reactive[bool] = reactive(False)

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.error: str | None = None
        self.daemon_online = False
        self._event_count = 0

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Label("", id="status-left"),
            Label("", id="status-right"),
        )

    def on_mount(self) -> None:
        self.border_title = "SQL PROFILER"
        self._refresh()

    def watch_connected(self, connected: bool) -> None:
        self._refresh()

    def watch_capturing(self, capturing: bool) -> None:
        self._refresh()

    def update_status(self, status: dict[str, Any]) -> None:
        """Apply a profiler-status payload."""
        self.daemon_online = True
        self.error = status.get("error")
        self.connected = bool(status.get("connected"))
        self.capturing = bool(status.get("capturing"))
        self._refresh()

    def set_event_count(self, count: int) -> None:
        self._event_count = count
        self._refresh()

    def set_disconnected(self) -> None:
        """Show daemon-unreachable state."""
        self.daemon_online = False
        self.connected = False
        self.capturing = False
        self._refresh()

    def _refresh(self) -> None:
        colors = self.app.config.tui.colors
        if not self.daemon_online:
            left = Text("● daemon offline", style=colors.disconnected)
            border = colors.disconnected
        elif self.capturing:
            left = Text("▶ CAPTURING", style=f"bold {colors.capturing}")
            border = colors.capturing
        elif self.connected:
            left = Text("● CONNECTED", style=f"bold {colors.connected}")
            border = colors.connected
        else:
            left = Text("○ NOT CONNECTED", style=colors.disconnected)
            border = colors.disconnected
        if self.error:
            left.append(f"  {self.error}", style=f"bold {colors.disconnected}")

        try:
            self.query_one("#status-left", Label).update(left)
            self.query_one("#status-right", Label).update(f"{format_count(self._event_count)} queries")
        except NoMatches:
            pass
        self.styles.border = ("solid", border)


class QueryTable(Static):
    """Captured queries, newest at the bottom.

    Rows are keyed by event id, so a live request is updated in place as it
    goes from running to completed.
    """

    DEFAULT_CSS = """
    QueryTable {
        height: 1fr;
        border: solid $primary;
        border-title-align: left;
    }

    QueryTable DataTable {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._table: DataTable | None = None
        self.events: dict[str, dict[str, Any]] = {}  # id -> payload, arrival order
        self.filters: list[FilterCondition] = []

    def compose(self) -> ComposeResult:
        yield DataTable(id="query-table", zebra_stripes=True, cursor_type="row")

    def on_mount(self) -> None:
        self.border_title = "QUERIES"
        self._table = self.query_one("#query-table", DataTable)
        for key, label in COLUMNS:
            self._table.add_column(label, key=key)

    @property
    def visible_count(self) -> int:
        return self._table.row_count if self._table else 0

    def _row_style(self, event: dict[str, Any]) -> str:
        tui = self.app.config.tui
        if event.get("event_status") == "running":
            return tui.colors.running
        if event.get("elapsed_time", 0) >= tui.slow_query_ms:
            return tui.colors.slow
        return tui.colors.completed

    def _make_row(self, event: dict[str, Any]) -> list[Text]:
        style = self._row_style(event)
        sql = event.get("current_statement") or event.get("sql_text") or ""
        cells = [
            extract_time(event.get("start_time", "")),
            str(event.get("session_id", "")),
            event.get("database_name") or "",
            event.get("event_status", ""),
            format_ms(event.get("elapsed_time", 0)),
            format_ms(event.get("cpu_time", 0)),
            format_count(event.get("logical_reads", 0)),
            format_count(event.get("writes", 0)),
            format_count(event.get("row_count", 0)),
            one_line_sql(sql, self.app.config.tui.sql_truncate_length),
        ]
        return [Text(cell, style=style) for cell in cells]

    def add_event(self, event: dict[str, Any]) -> None:
        """Insert a new event or update the row of a known one."""
        event_id = event.get("id")
        if not event_id or not self._table:
            return

        known = event_id in self.events
        self.events[event_id] = event
        visible = matches_all(event, self.filters)

        if known and event_id in self._table.rows:
            if visible:
                for (key, _), cell in zip(COLUMNS, self._make_row(event)):
                    self._table.update_cell(event_id, key, cell)
            else:
                self._table.remove_row(event_id)
        elif visible:
            self._table.add_row(*self._make_row(event), key=event_id)

        self._trim()

    def _trim(self) -> None:
        max_rows = self.app.config.tui.max_rows
        while len(self.events) > max_rows:
            oldest = next(iter(self.events))
            del self.events[oldest]
            if self._table and oldest in self._table.rows:
                self._table.remove_row(oldest)

    def set_filters(self, filters: list[FilterCondition]) -> None:
        """Replace the filters and rebuild the visible rows."""
        self.filters = filters
        self._rebuild()

    def _rebuild(self) -> None:
        if not self._table:
            return
        self._table.clear()
        for event_id, event in self.events.items():
            if matches_all(event, self.filters):
                self._table.add_row(*self._make_row(event), key=event_id)

    def clear_events(self) -> None:
        self.events.clear()
        if self._table:
            self._table.clear()


class DetailPane(Static):
    """Full text and counters of the highlighted query."""

    DEFAULT_CSS = """
    DetailPane {
        width: 2fr;
        height: 100%;
        border: solid $primary;
        border-title-align: left;
        padding: 0 1;
        overflow-y: auto;
    }
    """

    def on_mount(self) -> None:
        self.border_title = "DETAIL"
        self.show_event(None)

    def show_event(self, event: dict[str, Any] | None) -> None:
        if event is None:
            self.update(Text("Select a query to see its full text.", style="dim"))
            return
        text = Text()
        text.append(f"{event.get('event_status', '')}", style="bold")
        text.append(
            f"  SPID {event.get('session_id')}  {event.get('database_name', '')}"
            f"  {event.get('event_name', '')}\n",
        )
        text.append(
            f"Duration {format_ms(event.get('elapsed_time', 0))}  "
            f"CPU {format_ms(event.get('cpu_time', 0))}  "
            f"Logical {format_count(event.get('logical_reads', 0))}  "
            f"Physical {format_count(event.get('physical_reads', 0))}  "
            f"Writes {format_count(event.get('writes', 0))}  "
            f"Rows {format_count(event.get('row_count', 0))}\n",
            style="cyan",
        )
        text.append(
            f"{event.get('login_name', '')}@{event.get('host_name', '')}"
            f"  {event.get('program_name', '')}  started {event.get('start_time', '')}\n\n",
            style="dim",
        )
        statement = event.get("current_statement") or ""
        sql_text = event.get("sql_text") or ""
        text.append(statement or sql_text)
        if statement and sql_text and statement != sql_text:
            text.append("\n\n-- batch --\n", style="dim")
            text.append(sql_text, style="dim")
        self.update(text)


class ActivityLog(Static):
    """Status transitions and command results using RichLog for auto-scroll."""

    DEFAULT_CSS = """
    ActivityLog {
        width: 1fr;
        height: 100%;
        border: solid $primary;
        border-title-align: left;
    }

    ActivityLog RichLog {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._prev: tuple[bool, bool] | None = None

    def compose(self) -> ComposeResult:
        yield RichLog(
            id="activity-log",
            markup=True,
            max_lines=self.app.config.tui.activity_max_entries,
        )

    def on_mount(self) -> None:
        self.border_title = "ACTIVITY"
        self.add_entry("Waiting for daemon...")

    def add_entry(self, message: str, level: str = "normal") -> None:
        """Add a log entry with colored timestamp using config colors."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        colors = self.app.config.tui.colors
        color = {
            "error": colors.disconnected,
            "capture": colors.capturing,
            "normal": colors.connected,
        }.get(level, "white")
        try:
            log = self.query_one("#activity-log", RichLog)
            log.write(f"[{color}]{timestamp}  {message}[/{color}]")
        except NoMatches:
            pass

    def check_transitions(self, status: dict[str, Any]) -> None:
        current = (bool(status.get("connected")), bool(status.get("capturing")))
        if status.get("error"):
            self.add_entry(f"✗ {status['error']}", "error")
        if current == self._prev:
            return
        connected, capturing = current
        if capturing:
            self.add_entry("▶ Capture started", "capture")
        elif connected and self._prev is not None and self._prev[1]:
            self.add_entry("■ Capture stopped", "capture")
        elif connected:
            self.add_entry("● Connected to server")
        elif self._prev is not None:
            self.add_entry("○ Disconnected from server")
        self._prev = current

    def connected(self) -> None:
        """Called when the daemon socket connects."""
        try:
            self.query_one("#activity-log", RichLog).clear()
        except NoMatches:
            pass
        self._prev = None
        self.add_entry("Connected to daemon")


class SqlProfilerApp(App):
    """Live query feed for sql-profiler."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #header {
        height: 3;
    }

    #queries {
        height: 1fr;
    }

    #bottom-panels {
        height: 12;
    }

    #filter {
        display: none;
    }

    #filter.visible {
        display: block;
    }
    """

    BINDINGS = [
        ("c", "connect", "Connect"),
        ("d", "disconnect", "Disconnect"),
        ("s", "start_capture", "Start"),
        ("x", "stop_capture", "Stop"),
        ("slash", "filter", "Filter"),
        ("ctrl+l", "clear", "Clear"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, config: Config | None = None):
        super().__init__()
        self.config = config or Config.load()
        # Create config file with defaults if it doesn't exist
        if not self.config.config_path.exists():
            self.config.save()
        self._socket_client: SocketClient | None = None
        self._use_socket: bool = False
        self._socket_read_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopping: bool = False
        self._pending: dict[str, str] = {}  # request id -> command

    def compose(self) -> ComposeResult:
        """Create the TUI layout."""
        yield HeaderBar(id="header")
        yield QueryTable(id="queries")
        yield Horizontal(
            DetailPane(id="detail"),
            ActivityLog(id="activity"),
            id="bottom-panels",
        )
        yield Input(placeholder="elapsed_time>=100; sql_text~orders", id="filter")
        yield Footer()

    def on_mount(self) -> None:
        """Initialize on startup."""
        self.title = "sql-profiler"
        self.sub_title = "Query Feed"
        asyncio.create_task(self._initial_connect())

    def on_unmount(self) -> None:
        """Cleanup on shutdown."""
        self._stopping = True

        # Close socket first to unblock any pending readline()
        if self._socket_client:
            self._socket_client.close()

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._socket_read_task and not self._socket_read_task.done():
            self._socket_read_task.cancel()

    # ─────────────────────────────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────────────────────────────

    async def action_connect(self) -> None:
        # The daemon connects with its configured server
        await self._send_command("connect")

    async def action_disconnect(self) -> None:
        await self._send_command("disconnect")

    async def action_start_capture(self) -> None:
        await self._send_command("start_capture")

    async def action_stop_capture(self) -> None:
        await self._send_command("stop_capture")

    def action_clear(self) -> None:
        try:
            self.query_one("#queries", QueryTable).clear_events()
            self.query_one("#detail", DetailPane).show_event(None)
            self.query_one("#header", HeaderBar).set_event_count(0)
        except NoMatches:
            pass

    def action_filter(self) -> None:
        try:
            filter_input = self.query_one("#filter", Input)
        except NoMatches:
            return
        filter_input.add_class("visible")
        filter_input.focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "filter":
            return
        try:
            filters = parse_filter_text(event.value)
        except ValueError as e:
            self.notify(str(e), severity="error")
            return
        self.query_one("#queries", QueryTable).set_filters(filters)
        if not filters:
            event.input.remove_class("visible")
        self.sub_title = f"Query Feed ({len(filters)} filters)" if filters else "Query Feed"
        self.query_one("#query-table", DataTable).focus()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        table = self.query_one("#queries", QueryTable)
        selected = table.events.get(event.row_key.value) if event.row_key else None
        self.query_one("#detail", DetailPane).show_event(selected)

    async def _send_command(self, command: str, **fields: Any) -> None:
        if not self._use_socket or self._socket_client is None:
            self.notify("Daemon not connected", severity="warning")
            return
        try:
            request_id = await self._socket_client.send_command(command, **fields)
        except ConnectionError as e:
            self.notify(f"Send failed: {e}", severity="error")
            return
        self._pending[request_id] = command

    # ─────────────────────────────────────────────────────────────────────
    # Socket
    # ─────────────────────────────────────────────────────────────────────

    async def _try_socket_connect(self, show_notification: bool = True) -> bool:
        """Try to connect to daemon via socket.

        Args:
            show_notification: Whether to show notification on failure

        Returns:
            True if connected successfully, False otherwise
        """
        if self._socket_client is None:
            self._socket_client = SocketClient(socket_path=self.config.socket_path)

        try:
            await self._socket_client.connect()
            self._use_socket = True
            self.sub_title = "Query Feed (live)"
            # Log connection to daemon's log file
            try:
                await self._socket_client.send_message(
                    {
                        "type": "log",
                        "level": "info",
                        "event": "tui_connected",
                        "path": str(self.config.socket_path),
                    }
                )
            except ConnectionError:
                pass  # Connection logging is best-effort
            try:
                self.query_one("#activity", ActivityLog).connected()
            except NoMatches:
                pass
            self._socket_read_task = asyncio.create_task(self._read_socket_loop())
            return True
        except FileNotFoundError:
            self._set_disconnected("socket not found", start_reconnect=False)
            if show_notification:
                self.notify(
                    "Daemon not running. Start with: sql-profiler daemon",
                    severity="warning",
                )
            return False
        except PermissionError as e:
            self._set_disconnected(f"permission denied: {e}", start_reconnect=False)
            if show_notification:
                self.notify(f"Socket permission denied: {e}", severity="error")
            return False
        except OSError as e:
            self._set_disconnected(f"{type(e).__name__}: {e}", start_reconnect=False)
            if show_notification:
                self.notify(f"Socket connection failed: {e}", severity="error")
            return False

    async def _initial_connect(self) -> None:
        """Initial connection attempt with notification, then start reconnect if needed."""
        connected = await self._try_socket_connect(show_notification=True)
        if not connected:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Attempt to reconnect with exponential backoff.

        Backoff schedule with defaults: 1s → 2s → 4s → 8s → 16s → 30s (capped)
        """
        tui = self.config.tui
        delay = tui.reconnect_initial_delay

        while not self._stopping:
            self.sub_title = f"Query Feed (reconnecting in {delay:.0f}s...)"

            # Sleep in 1-second chunks to stay responsive to shutdown
            remaining = delay
            while remaining > 0 and not self._stopping:
                try:
                    await asyncio.sleep(min(1.0, remaining))
                except asyncio.CancelledError:
                    return
                remaining -= 1.0

            if self._stopping:
                return

            if self._socket_client:
                await self._socket_client.disconnect()
                self._socket_client = None

            self.sub_title = "Query Feed (reconnecting...)"
            connected = await self._try_socket_connect(show_notification=False)

            if connected:
                self.notify("Reconnected to daemon", severity="information")
                return

            delay = min(delay * tui.reconnect_multiplier, tui.reconnect_max_delay)

    async def _read_socket_loop(self) -> None:
        """Read messages from socket and update UI."""
        try:
            while self._use_socket and self._socket_client and not self._stopping:
                try:
                    data = await self._socket_client.read_message(timeout=1.0)
                    self._handle_socket_data(data)
                except TimeoutError:
                    continue
        except ConnectionError as e:
            self._set_disconnected(f"connection lost: {e}")
            self.notify("Lost connection to daemon", severity="warning")
        except asyncio.CancelledError:
            pass
        except ValueError as e:
            self._set_disconnected(f"{type(e).__name__}: {e}")
            self.notify(f"Socket error: {e}", severity="error")

    def _set_disconnected(self, error: str | None = None, start_reconnect: bool = True) -> None:
        """Update UI to show disconnected state and optionally start reconnection."""
        self._use_socket = False
        self._pending.clear()
        self.sub_title = "Query Feed (disconnected)"
        try:
            self.query_one("#header", HeaderBar).set_disconnected()
        except NoMatches:
            pass

        if start_reconnect and not self._stopping:
            if self._reconnect_task is None or self._reconnect_task.done():
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def _handle_socket_data(self, data: dict[str, Any]) -> None:
        """Handle messages from daemon socket."""
        msg_type = data.get("type")
        try:
            header = self.query_one("#header", HeaderBar)
            table = self.query_one("#queries", QueryTable)
            activity = self.query_one("#activity", ActivityLog)
        except NoMatches:
            return

        if msg_type == "initial_state":
            status = data.get("status", {})
            header.update_status(status)
            activity.check_transitions(status)
            for event in data.get("events", []):
                table.add_event(event)
        elif msg_type == "profiler-status":
            status = data.get("data", {})
            header.update_status(status)
            activity.check_transitions(status)
        elif msg_type == "query-event":
            table.add_event(data.get("data", {}))
        elif msg_type == "reply":
            command = self._pending.pop(data.get("id", ""), None)
            if command is not None and not data.get("ok"):
                error = data.get("error") or "failed"
                self.notify(f"{command}: {error}", severity="error")
                activity.add_entry(f"✗ {command}: {error}", "error")
            return
        else:
            return

        header.set_event_count(len(table.events))


def run_tui(config: Config | None = None) -> None:
    """Run the TUI application."""
    app = SqlProfilerApp(config)
    app.run()
