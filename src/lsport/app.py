"""lsport - Main Textual application."""

from pathlib import Path

from rich.markup import escape
from rich.text import Text
from textual import work
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Input, Static

from lsport.engine import Engine
from lsport.errors import KillError
from lsport.kill import PidRef
from lsport.models import Notice, PortEntry, Snapshot, SortKey
from lsport.view import ViewState

NOTICE_SEVERITY = {"info": "information", "success": "information", "error": "error"}
SORT_LABELS = {
    SortKey.PORT: "PORT",
    SortKey.PROTOCOL: "PROTO",
    SortKey.PID: "PID",
    SortKey.NAME: "PROCESS",
    SortKey.CPU: "CPU%",
    SortKey.MEMORY: "MEMORY",
}


class StatusBar(Static):
    """Status line showing the source, sort, filter and scan health."""

    DEFAULT_CSS = """
    StatusBar {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize StatusBar."""
        super().__init__(*args, **kwargs)
        self._source_label: str = "local"
        self._count: int = 0
        self._total: int = 0
        self._error: str | None = None
        self._sort: str = "PORT ▲"
        self._filter: str = ""
        self._filter_is_regex: bool = False
        self._owners: int = 0
        self._suspicious: int = 0

    def update_status(self, view: ViewState) -> None:
        """Update the status from the current view."""
        snapshot = view.snapshot
        self._source_label = snapshot.source.label
        self._count = len(view.visible)
        self._total = len(snapshot.entries)
        self._owners = len(snapshot.pids())
        self._error = snapshot.error
        self._sort = f"{SORT_LABELS[view.sort_key]} {'▲' if view.sort_ascending else '▼'}"
        self._filter = view.filter_pattern
        self._filter_is_regex = view.filter_is_regex
        self._suspicious = sum(1 for e in snapshot.entries if e.is_suspicious)
        self.update(self.render_status())

    def render_status(self) -> str:
        parts = [
            f"[b]{escape(self._source_label)}[/b]",
            f"{self._count}/{self._total} sockets ({self._owners} processes)",
            f"sort: {self._sort}",
        ]
        if self._filter:
            mode = "regex" if self._filter_is_regex else "text"
            parts.append(f"filter ({mode}): {escape(self._filter)}")
        if self._suspicious:
            parts.append(f"[yellow]{self._suspicious} suspicious (high CPU, orphaned; heuristic)[/yellow]")
        if self._error:
            parts.append(f"[red]stale: {escape(self._error)}[/red]")
        return "  |  ".join(parts)


class PortTable(Container):
    """Container for the port data table."""

    DEFAULT_CSS = """
    PortTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize PortTable."""
        super().__init__(*args, **kwargs)
        self._row_keys: list[str] = []

    def compose(self) -> ComposeResult:
        """Compose the port table."""
        yield DataTable(id="port-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#port-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PORT", key="port", width=7)
        table.add_column("PROTO", key="protocol", width=6)
        table.add_column("PID", key="pid", width=8)
        table.add_column("PROCESS", key="name", width=24)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("MEMORY", key="memory", width=10)
        table.add_column("", key="flag", width=3)

    @property
    def row_keys(self) -> list[str]:
        return list(self._row_keys)

    def update_entries(self, entries: list[PortEntry], selected_index: int | None) -> None:
        """
        Replace the table rows with the given view.

        Rows are rebuilt when the order or membership changes; otherwise
        cells are updated in place.
        """
        table = self.query_one("#port-table", DataTable)
        new_keys = [row_key(entry) for entry in entries]

        if new_keys == self._row_keys:
            for key, entry in zip(new_keys, entries):
                self._update_row(table, key, entry)
        else:
            table.clear()
            for key, entry in zip(new_keys, entries):
                table.add_row(*format_row(entry), key=key)
            self._row_keys = new_keys

        if selected_index is not None and selected_index != table.cursor_row:
            table.move_cursor(row=selected_index)

    def _update_row(self, table: DataTable, key: str, entry: PortEntry) -> None:
        for column, value in zip(("port", "protocol", "pid", "name", "cpu", "memory", "flag"), format_row(entry)):
            table.update_cell(key, column, value)


def row_key(entry: PortEntry) -> str:
    return f"{entry.port}/{entry.protocol}/{entry.pid}"


def format_row(entry: PortEntry) -> tuple[str | Text, ...]:
    # Text, not markup: process names can contain brackets
    name = Text(entry.display_name[:24], style="yellow" if entry.is_suspicious else "")
    return (
        str(entry.port),
        str(entry.protocol),
        "-" if entry.pid is None else str(entry.pid),
        name,
        f"{entry.cpu_percent:5.1f}",
        entry.memory_display,
        "⚠" if entry.is_suspicious else "",
    )


class LsportApp(App):
    """Main lsport application."""

    TITLE = "lsport"
    SUB_TITLE = "Listening ports and their processes"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status-bar {
        dock: top;
    }

    #prompt {
        dock: bottom;
        display: none;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "sort", "Sort"),
        ("o", "reverse", "Order"),
        ("1", "sort_by('port')", "Port"),
        ("2", "sort_by('protocol')", "Proto"),
        ("3", "sort_by('pid')", "PID"),
        ("4", "sort_by('name')", "Name"),
        ("5", "sort_by('cpu')", "CPU"),
        ("6", "sort_by('memory')", "Mem"),
        ("slash", "filter", "Filter"),
        ("escape", "clear_filter", "Clear"),
        ("x", "kill", "Kill"),
        ("f", "force_kill", "Force kill"),
        ("r", "refresh", "Refresh"),
        ("c", "connect", "Connect"),
        ("d", "disconnect", "Disconnect"),
    ]

    def __init__(self, engine: Engine | None = None, host: str | None = None, identity: Path | None = None) -> None:
        """Initialize the LsportApp."""
        super().__init__()
        self._engine = engine or Engine()
        self._host = host
        self._identity = identity
        self._prompt_mode: str | None = None
        self._shown: Snapshot | None = None

    @property
    def engine(self) -> Engine:
        return self._engine

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusBar(id="status-bar")
        yield PortTable()
        yield Input(id="prompt")
        yield Footer()

    def on_mount(self) -> None:
        """Start the refresh loop when the app is mounted."""
        self._engine.start()
        if self._host:
            self._connect(self._host, self._identity)
        self.query_one("#port-table", DataTable).focus()
        # Poll the update queue from the UI thread
        self.set_interval(0.25, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain engine updates and refresh the UI."""
        for notice in self._engine.poll():
            self._show_notice(notice)
        if self._engine.view.snapshot is not self._shown:
            self._shown = self._engine.view.snapshot
            self._refresh_view()

    def _refresh_view(self) -> None:
        view = self._engine.view
        self.query_one(PortTable).update_entries(view.visible, view.selected_index)
        self.query_one("#status-bar", StatusBar).update_status(view)

    def _show_notice(self, notice: Notice) -> None:
        self.notify(escape(notice.message), severity=NOTICE_SEVERITY.get(notice.level, "information"))

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        """Keep the view's selection in step with the table cursor."""
        self._engine.view.select(event.cursor_row)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        """Handle the filter or connect prompt."""
        mode, value = self._prompt_mode, event.value.strip()
        self._close_prompt()
        if mode == "filter":
            self._engine.set_filter(value)
            self._refresh_view()
        elif mode == "connect" and value:
            self._connect(value, self._identity)

    def _connect(self, host: str, identity: Path | None) -> None:
        try:
            spec = self._engine.connect(host, identity)
        except ValueError as e:
            self.notify(escape(f"Invalid host: {e}"), severity="error")
            return
        self.sub_title = f"Remote: {spec.display}"

    def _open_prompt(self, mode: str, placeholder: str, value: str = "") -> None:
        prompt = self.query_one("#prompt", Input)
        self._prompt_mode = mode
        prompt.placeholder = placeholder
        prompt.value = value
        prompt.display = True
        prompt.focus()

    def _close_prompt(self) -> None:
        prompt = self.query_one("#prompt", Input)
        prompt.display = False
        self._prompt_mode = None
        self.query_one("#port-table", DataTable).focus()

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        key = self._engine.view.cycle_sort()
        self.notify(f"Sort: {SORT_LABELS[key]}")
        self._refresh_view()

    def action_reverse(self) -> None:
        self._engine.set_sort(self._engine.view.sort_key)
        self._refresh_view()

    def action_sort_by(self, key: str) -> None:
        self._engine.set_sort(SortKey(key))
        self._refresh_view()

    def action_filter(self) -> None:
        self._open_prompt("filter", "Filter by name, PID or port (regex or text)", self._engine.view.filter_pattern)

    def action_clear_filter(self) -> None:
        if self._prompt_mode is not None:
            self._close_prompt()
            return
        self._engine.set_filter("")
        self._refresh_view()

    def action_connect(self) -> None:
        self._open_prompt("connect", "[user@]host[:port]")

    def action_disconnect(self) -> None:
        if self._engine.latest_snapshot().source.is_remote or self._engine.loop.session is not None:
            self._engine.disconnect()
            self.sub_title = self.SUB_TITLE

    def action_refresh(self) -> None:
        self._engine.loop.request_refresh()

    def action_kill(self) -> None:
        self._kill_selected(force=False)

    def action_force_kill(self) -> None:
        self._kill_selected(force=True)

    def _kill_selected(self, force: bool) -> None:
        entry = self._engine.view.selected
        if entry is None:
            return
        if entry.pid is None:
            self.notify(f"Owner of port {entry.port} is unknown; cannot kill", severity="warning")
            return
        self._kill_worker(entry.pid, force)

    @work(thread=True, group="kill")
    def _kill_worker(self, pid: int, force: bool) -> None:
        # A remote kill waits on the SSH channel
        try:
            outcome = self._engine.kill(PidRef(pid), force=force)
        except KillError as e:
            self.call_from_thread(self.notify, escape(str(e)), severity="error")
            return
        self.call_from_thread(self.notify, escape(outcome.describe()))

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._engine.stop()
        self.exit()
