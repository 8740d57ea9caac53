"""hostpulse - Terminal dashboard subscribed to the snapshot stream."""

from enum import Enum
from queue import Empty, Queue
from typing import Any

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from hostpulse.config import Settings, get_settings
from hostpulse.provider import MetricsProvider
from hostpulse.registry import EVENT_ERROR, EVENT_UPDATE
from hostpulse.scheduler import build_scheduler


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    NAME = "name"


class QueueObserver:
    """Registry observer that hands events to the UI through a queue."""

    def __init__(self, events: "Queue[tuple[str, dict[str, Any]]]") -> None:
        self._events = events

    async def send(self, event: str, data: dict[str, Any]) -> None:
        self._events.put((event, data))


def bar(percent: float, color: str, width: int = 20) -> str:
    """Render a percentage as a fixed-width markup bar."""
    filled = min(int(percent / (100 / width)), width)
    return f"[{color}]█[/{color}]" * filled + "[dim]░[/dim]" * (width - filled)


class HeaderStats(Static):
    """Header widget showing CPU, memory, disk and network statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._payload: dict[str, Any] | None = None
        self._error: str | None = None

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_host_info(), id="host-info"),
        )

    def update_stats(self, payload: dict[str, Any]) -> None:
        """Update the statistics from a snapshot payload."""
        self._payload = payload
        self._error = None
        self._refresh_display()

    def show_error(self, message: str) -> None:
        self._error = message
        self._refresh_display()

    def _refresh_display(self) -> None:
        """Refresh the display with current data."""
        try:
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#host-info", Static).update(self._get_host_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_cpu_info(self) -> str:
        """Get CPU info display."""
        if self._payload is None:
            return "Loading CPU info..."
        cpu = self._payload["cpuLoad"]
        speed = self._payload["cpuSpeed"]
        temp = self._payload["cpuTemp"]
        lines = [f"CPU   \\[{bar(cpu['overallPercent'], 'green')}] {cpu['overallPercent']:5.1f}%"]
        for i, usage in enumerate(cpu["perCorePercent"]):
            lines.append(f"CPU{i:<2} \\[{bar(usage, 'green')}] {usage:5.1f}%")
        lines.append(f"Speed: {speed['minGHz']:.2f}/{speed['avgGHz']:.2f}/{speed['maxGHz']:.2f} GHz")
        main_c = temp["mainC"]
        lines.append(f"Temp: {main_c:.1f}°C" if main_c is not None else "Temp: n/a")
        return "\n".join(lines)

    def _get_host_info(self) -> str:
        """Get memory, disk, network and uptime display."""
        if self._payload is None:
            return self._error or "Loading host info..."
        mem = self._payload["memory"]
        disk = self._payload["diskUsage"]
        io = self._payload["diskActivity"]
        net = self._payload["network"]
        lines = [
            f"Mem \\[{bar(mem['usedPercent'], 'cyan')}] {mem['usedGB']:.1f}G/{mem['totalGB']:.1f}G",
            f"Dsk \\[{bar(disk['usedPercent'], 'yellow')}] {disk['usedGB']:.0f}G/{disk['totalGB']:.0f}G",
            f"Disk I/O: R {io['readMBps']:.2f} MB/s  W {io['writeMBps']:.2f} MB/s",
            f"Network: ↓ {net['downMBps']:.2f} MB/s  ↑ {net['upMBps']:.2f} MB/s",
            f"Uptime: {self._payload['uptime']['uptimeHuman']}",
        ]
        if self._error:
            lines.append(f"[red]{self._error}[/red]")
        return "\n".join(lines)


class ProcessTable(Container):
    """Container for the top-process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True  # Default: descending for CPU

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("RES MB", key="ram", width=10)
        table.add_column("Name", key="name")

    def update_processes(self, processes: list[dict[str, Any]]) -> None:
        """Replace the table rows with the given top processes."""
        table = self.query_one("#process-table", DataTable)
        table.clear()
        for proc in self._sort_processes(processes):
            table.add_row(
                str(proc["pid"]),
                f"{proc['cpuPercent']:5.1f}",
                f"{proc['ramMB']:8.1f}",
                proc["name"][:50],
                key=str(proc["pid"]),
            )

    def _sort_processes(self, processes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Sort processes based on the current sort key."""
        key_func = {
            SortKey.CPU: lambda p: p["cpuPercent"],
            SortKey.MEM: lambda p: p["ramMB"],
            SortKey.PID: lambda p: p["pid"],
            SortKey.NAME: lambda p: p["name"].lower(),
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)


class HostpulseApp(App):
    """Terminal dashboard for hostpulse."""

    TITLE = "hostpulse"
    SUB_TITLE = "Host Health Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 8;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #host-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("r", "request", "Refresh"),
    ]

    def __init__(self, settings: Settings | None = None, provider: MetricsProvider | None = None) -> None:
        """Initialize the HostpulseApp."""
        super().__init__()
        self._events: Queue[tuple[str, dict[str, Any]]] = Queue()
        self._observer = QueueObserver(self._events)
        self._scheduler = build_scheduler(settings or get_settings(), provider)
        self._last_payload: dict[str, Any] | None = None

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start sampling and subscribe when the app is mounted."""
        self.run_worker(self._start_monitoring(), exclusive=True)
        self.set_interval(0.5, self._check_for_updates)

    async def _start_monitoring(self) -> None:
        await self._scheduler.start()
        await self._scheduler.registry.join(self._observer)

    def _check_for_updates(self) -> None:
        """Drain queued events and render the most recent ones."""
        payload = None
        error = None
        while True:
            try:
                event, data = self._events.get_nowait()
            except Empty:
                break
            if event == EVENT_UPDATE:
                payload = data
            elif event == EVENT_ERROR:
                error = data.get("message", "error")

        if payload is not None:
            self._update_ui(payload)
        if error is not None:
            try:
                self.query_one("#header-stats", HeaderStats).show_error(error)
            except Exception:
                pass

    def _update_ui(self, payload: dict[str, Any]) -> None:
        """Update the UI with a snapshot payload."""
        self._last_payload = payload
        try:
            self.query_one("#header-stats", HeaderStats).update_stats(payload)
            self.query_one(ProcessTable).update_processes(payload["topProcesses"])
        except Exception:
            # A rendering problem must never take the dashboard down
            pass

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        process_table = self.query_one(ProcessTable)
        new_sort_key = process_table.cycle_sort()
        if self._last_payload is not None:
            process_table.update_processes(self._last_payload["topProcesses"])
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    async def action_request(self) -> None:
        """Ask the registry for the latest snapshot."""
        await self._scheduler.registry.request_latest(self._observer)

    async def on_unmount(self) -> None:
        """Stop sampling when the app shuts down."""
        self._scheduler.registry.leave(self._observer)
        await self._scheduler.stop()

    async def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        await self.on_unmount()
        self.exit()


def main() -> None:
    """Entry point for the hostpulse dashboard."""
    app = HostpulseApp()
    app.run()


if __name__ == "__main__":
    main()
