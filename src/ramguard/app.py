"""ramguard - Textual dashboard."""

from enum import Enum
from queue import Empty, Queue

from textual import work
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from ramguard.config import WatchdogConfig
from ramguard.coordinator import Coordinator, CycleReport
from ramguard.models import MemorySnapshot, ProcessCandidate
from ramguard.store import Store


class SortKey(Enum):
    """Sort keys for the candidate table."""

    MEM = "mem"
    CPU = "cpu"
    PID = "pid"


def format_mb(size_mb: float) -> str:
    """Format megabytes as human-readable string."""
    for unit in ["M", "G", "T"]:
        if size_mb < 1024:
            return f"{size_mb:5.1f}{unit}"
        size_mb = size_mb / 1024
    return f"{size_mb:.1f}P"


def _bar(percent: float, color: str) -> str:
    bar_len = min(int(percent / 5), 20)
    return f"[{color}]█[/{color}]" * bar_len + "[dim]░[/dim]" * (20 - bar_len)


class HeaderStats(Static):
    """Header widget showing detector state and memory statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._snapshot: MemorySnapshot | None = None
        self._threshold: float = 0.0
        self._detector: dict = {}

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_detector_info(), id="detector-info"),
            Static(self._get_mem_info(), id="mem-info"),
        )

    def update_stats(self, snapshot: MemorySnapshot, detector: dict, threshold: float) -> None:
        """Update the statistics from a snapshot and detector stats."""
        self._snapshot = snapshot
        self._detector = detector
        self._threshold = threshold
        self._refresh_display()

    def _refresh_display(self) -> None:
        try:
            self.query_one("#detector-info", Static).update(self._get_detector_info())
            self.query_one("#mem-info", Static).update(self._get_mem_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_detector_info(self) -> str:
        if not self._detector:
            return "Waiting for first sample..."
        stats = self._detector
        if stats["in_cooldown"]:
            remaining = (stats["cooldown_remaining_ms"] or 0) / 1000
            state = f"[yellow]cooldown[/yellow] ({remaining:.0f}s left)"
        elif stats["consecutive_count"] > 0:
            state = "[red]accumulating[/red]"
        else:
            state = "[green]normal[/green]"
        return (
            f"Detector: {state}\n"
            f"Breaches: {stats['consecutive_count']}/{stats['required_consecutive']}"
            f"  Threshold: {self._threshold:.0f}%\n"
            f"Backoff: {stats['cooldown_multiplier']}x\n"
            f"Actions (1h): {stats['history']['actions_last_hour']}"
        )

    def _get_mem_info(self) -> str:
        snapshot = self._snapshot
        if snapshot is None or snapshot.total_mb == 0:
            return "Loading memory info..."

        mem_color = "red" if snapshot.percent > self._threshold else "cyan"
        swap_percent = snapshot.swap_percent if snapshot.swap_total_mb > 0 else 0.0
        load_avg = snapshot.load_avg

        uptime = snapshot.uptime_seconds
        days = int(uptime // 86400)
        hours = int((uptime % 86400) // 3600)
        minutes = int((uptime % 3600) // 60)
        seconds = int(uptime % 60)
        if days > 0:
            uptime_str = f"{days} days, {hours:02d}:{minutes:02d}:{seconds:02d}"
        else:
            uptime_str = f"{hours:02d}:{minutes:02d}:{seconds:02d}"

        # Use escaped brackets for the bar containers
        return (
            f"Mem\\[{_bar(snapshot.percent, mem_color)}] "
            f"{snapshot.used_mb / 1024:.1f}G/{snapshot.total_mb / 1024:.1f}G ({snapshot.percent:.1f}%)\n"
            f"Swp\\[{_bar(swap_percent, 'yellow')}] "
            f"{snapshot.swap_used_mb / 1024:.1f}G/{snapshot.swap_total_mb / 1024:.1f}G\n"
            f"Load average: {load_avg[0]:.2f} {load_avg[1]:.2f} {load_avg[2]:.2f}\n"
            f"Uptime: {uptime_str}"
        )


class CandidateTable(Container):
    """Container for the killable-candidate data table."""

    DEFAULT_CSS = """
    CandidateTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.MEM

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="candidate-table")

    def on_mount(self) -> None:
        table = self.query_one("#candidate-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("S", key="state", width=3)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("Command", key="command")

    def selected_pid(self) -> int | None:
        """Pid of the row under the cursor, if any."""
        table = self.query_one("#candidate-table", DataTable)
        if table.row_count == 0:
            return None
        try:
            row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except Exception:
            return None
        return int(row_key.value) if row_key.value is not None else None

    def update_candidates(self, candidates: list[ProcessCandidate]) -> None:
        """
        Update the table with the current killable candidates.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#candidate-table", DataTable)
        ordered = self._sort_candidates(candidates)
        new_pids = {c.pid for c in ordered}

        for pid in self._current_pids - new_pids:
            try:
                table.remove_row(str(pid))
            except Exception:
                pass  # Row may not exist

        for candidate in ordered:
            row_key = str(candidate.pid)
            if candidate.pid in self._current_pids:
                self._update_row(table, row_key, candidate)
            else:
                self._add_row(table, row_key, candidate)

        self._current_pids = new_pids

    def _sort_candidates(self, candidates: list[ProcessCandidate]) -> list[ProcessCandidate]:
        if self._sort_key is SortKey.PID:
            return sorted(candidates, key=lambda c: c.pid)
        if self._sort_key is SortKey.CPU:
            return sorted(candidates, key=lambda c: c.cpu_percent, reverse=True)
        return sorted(candidates, key=lambda c: c.memory_mb, reverse=True)

    @staticmethod
    def _cells(candidate: ProcessCandidate) -> dict[str, str]:
        return {
            "pid": str(candidate.pid),
            "user": candidate.user[:10],
            "state": candidate.state,
            "cpu": f"{candidate.cpu_percent:5.1f}",
            "mem": f"{candidate.memory_percent:5.1f}",
            "rss": format_mb(candidate.memory_mb),
            "command": candidate.full_command[:60],
        }

    def _update_row(self, table: DataTable, row_key: str, candidate: ProcessCandidate) -> None:
        try:
            for column, value in self._cells(candidate).items():
                table.update_cell(row_key, column, value)
        except Exception:
            pass  # Row may have been removed

    def _add_row(self, table: DataTable, row_key: str, candidate: ProcessCandidate) -> None:
        try:
            table.add_row(*self._cells(candidate).values(), key=row_key)
        except Exception:
            pass  # Row may already exist


class RamguardApp(App):
    """Dashboard over a running Coordinator."""

    TITLE = "ramguard"
    SUB_TITLE = "Memory Pressure Watchdog"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #detector-info {
        width: 1fr;
        padding-right: 2;
    }

    #mem-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("d", "dry_run", "Dry run"),
        ("r", "reset_detector", "Reset"),
        ("k", "kill_selected", "Kill"),
    ]

    def __init__(
        self,
        config: WatchdogConfig | None = None,
        store: Store | None = None,
        coordinator: Coordinator | None = None,
        updates: Queue[CycleReport] | None = None,
    ) -> None:
        """
        Initialize the RamguardApp.

        Either pass a ready coordinator together with the queue it reports
        to, or a config from which one is built.
        """
        super().__init__()
        self._update_queue: Queue[CycleReport] = updates if updates is not None else Queue()
        if coordinator is None:
            coordinator = Coordinator.from_config(
                config or WatchdogConfig(), store=store, updates=self._update_queue
            )
        self._coordinator = coordinator

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield CandidateTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the coordinator when the app is mounted."""
        self._coordinator.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the report queue and refresh the UI with the newest one."""
        report = None
        while True:
            try:
                report = self._update_queue.get_nowait()
            except Empty:
                break

        if report is not None:
            self._update_ui(report)

    def _update_ui(self, report: CycleReport) -> None:
        try:
            header = self.query_one("#header-stats", HeaderStats)
            header.update_stats(
                report.snapshot,
                self._coordinator.detector.stats(),
                self._coordinator.config.threshold,
            )
        except Exception:
            pass  # Never crash the dashboard on a render error

        for outcome in report.outcomes:
            if outcome.success:
                self.notify(f"Killed PID {outcome.pid} ({outcome.signal}), freed {outcome.memory_mb:.0f}MB")
            else:
                self.notify(f"Failed to kill PID {outcome.pid}: {outcome.error}", severity="error")

        self._load_candidates()

    @work(thread=True, exclusive=True, group="candidates", exit_on_error=False)
    def _load_candidates(self) -> None:
        candidates = self._coordinator.catalog.list_killable()
        self.call_from_thread(self._show_candidates, candidates)

    def _show_candidates(self, candidates: list[ProcessCandidate]) -> None:
        self.query_one(CandidateTable).update_candidates(candidates)

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        table = self.query_one(CandidateTable)
        new_sort_key = table.cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_dry_run(self) -> None:
        """Show what a remediation would terminate right now."""
        plan = self._coordinator.dry_run_preview(max_kills=1)
        if not plan.targets:
            self.notify("Dry run: nothing to kill")
            return
        target = plan.targets[0]
        self.notify(
            f"Dry run: would kill {target.command} (PID {target.pid}), "
            f"freeing ~{plan.estimated_memory_mb:.0f}MB"
        )

    @work(thread=True, exclusive=True, group="actions", exit_on_error=False)
    def action_reset_detector(self) -> None:
        """Clear detector backoff and cooldown."""
        self._coordinator.reset_detector()
        self.call_from_thread(self.notify, "Detector reset")

    def action_kill_selected(self) -> None:
        pid = self.query_one(CandidateTable).selected_pid()
        if pid is None:
            self.notify("No process selected", severity="warning")
            return
        self._kill(pid)

    @work(thread=True, exclusive=True, group="actions", exit_on_error=False)
    def _kill(self, pid: int) -> None:
        result = self._coordinator.kill_by_pid(pid, "Manual kill from dashboard")
        if result.outcome is None:
            message = f"Refused to kill PID {pid}: {result.validation.reason.value}"
            self.call_from_thread(self.notify, message, severity="warning")
        elif result.outcome.success:
            self.call_from_thread(self.notify, f"Killed PID {pid} ({result.outcome.signal})")
        else:
            message = f"Failed to kill PID {pid}: {result.outcome.error}"
            self.call_from_thread(self.notify, message, severity="error")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._coordinator.stop()
        self.exit()
