"""TUI Dashboard for fleetrun."""

import asyncio
import logging
import signal
from dataclasses import dataclass

from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Grid
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .config import Config
from .errors import FleetrunError, InterruptedByOperator
from .executor import Executor, JobStatus
from .jobs import JobRegistry
from .strategies import Strategy
from .watchdog import STOP_SIGNALS, StopReason, Supervisor

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    JobStatus.PENDING: ("", "dim"),
    JobStatus.RUNNING: ("", "yellow"),
    JobStatus.SUCCESS: ("", "green"),
    JobStatus.FAILED: ("", "red"),
}

# Line prefixes that get a style of their own in a panel
LINE_STYLES = (
    ("$ ", "bold cyan"),
    ("ssh:", "bold red"),
    ("ERROR:", "bold red"),
)


def styled_line(line: str) -> Text:
    """Wrap one output line for a RichLog. Command output is never parsed as markup."""
    for prefix, style in LINE_STYLES:
        if line.startswith(prefix):
            return Text(line, style=style)
    return Text(line)


class TargetPanel(Static):
    """A panel displaying output for a single target."""

    status: reactive[JobStatus] = reactive(JobStatus.PENDING)

    def __init__(self, label: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.label = label
        self._header = Label(self._get_header())
        self._log = RichLog(highlight=True, markup=False, wrap=True, auto_scroll=True)

    def compose(self) -> ComposeResult:
        yield self._header
        yield self._log

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.label}[/bold][/] [{color}]{self.status.value}[/]"

    def watch_status(self, status: JobStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        self._header.update(self._get_header())

    def append_output(self, line: str) -> None:
        """Append a line of output to this panel."""
        self._log.write(styled_line(line))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    finished: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Jobs finished: {self.finished} | failed: {self.failed} | {status} "
            "| Press 'q' to stop and quit"
        )


@dataclass
class TargetOutput(Message):
    """Message for target output."""
    label: str
    line: str


@dataclass
class TargetStatusChange(Message):
    """Message for target status change."""
    label: str
    status: JobStatus


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    #panels {
        grid-size: 2;
        grid-gutter: 1;
        height: 1fr;
    }

    TargetPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    TargetPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    TargetPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(self, config: Config, strategy: Strategy, **kwargs) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.strategy = strategy
        self.panels: dict[str, TargetPanel] = {}
        self.registry = JobRegistry()
        self.supervisor = Supervisor(
            self.registry,
            parent_pid=config.parent_pid,
            poll_interval=config.poll_interval,
            watch_parent=config.watch_parent,
        )
        self.error: FleetrunError | None = None
        self._worker: Worker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None  # the worker thread's loop
        self._stop_requested = False
        self._signals: list[int] = []

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Grid(id="panels")
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        # The strategy runs off the main thread, where signals cannot be caught
        self.install_stop_handlers(asyncio.get_running_loop())

        for host in self.config.host_set():
            self._panel_for(host.label)

        # Start execution using Textual's worker system
        self._worker = self.run_worker(self._run_execution(), exclusive=True, thread=True)

    def on_unmount(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    def install_stop_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Forward SIGINT, SIGTERM and SIGHUP to the supervisor."""
        for sig in STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot install handler for %s", signal.Signals(sig).name)
                continue
            self._signals.append(sig)

    def request_stop(self) -> None:
        """Tear down running jobs; the app exits once the worker has finished."""
        self._stop_requested = True
        loop = self._loop
        if loop is None or self._worker is None or not self._worker.is_running:
            self.exit()
            return
        try:
            loop.call_soon_threadsafe(self.supervisor.stop, StopReason.INTERRUPTED)
        except RuntimeError:
            # The worker loop already closed
            self.exit()

    def _panel_for(self, label: str) -> TargetPanel:
        if label not in self.panels:
            panel = TargetPanel(label)
            self.panels[label] = panel
            self.query_one("#panels", Grid).mount(panel)
        return self.panels[label]

    async def _run_execution(self) -> None:
        """Run the strategy under the supervisor in the worker thread."""
        self._loop = asyncio.get_running_loop()
        if self._stop_requested:
            return
        executor = Executor(
            self.config,
            self.registry,
            on_output=self._on_output,
            on_status=self._on_status,
        )
        try:
            await self.supervisor.run(self.strategy(executor, self.config))
        except FleetrunError as e:
            self.error = e
            if not isinstance(e, InterruptedByOperator):
                self._on_output("fleetrun", f"ERROR: {e}")

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker == self._worker and event.worker.is_finished:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False
            if self._stop_requested:
                self.exit()

    def _on_output(self, label: str, line: str) -> None:
        """Handle output from a target - posts message to main thread."""
        self.post_message(TargetOutput(label, line))

    def _on_status(self, label: str, status: JobStatus) -> None:
        """Handle status change for a target - posts message to main thread."""
        self.post_message(TargetStatusChange(label, status))

    def on_target_output(self, message: TargetOutput) -> None:
        """Handle TargetOutput message in main thread."""
        self._panel_for(message.label).append_output(message.line)

    def on_target_status_change(self, message: TargetStatusChange) -> None:
        """Handle TargetStatusChange message in main thread."""
        self._panel_for(message.label).status = message.status

        status_bar = self.query_one("#status-bar", StatusBar)
        if message.status is JobStatus.SUCCESS:
            status_bar.finished += 1
        elif message.status is JobStatus.FAILED:
            status_bar.finished += 1
            status_bar.failed += 1

    async def action_quit(self) -> None:
        """Stop every running job, then quit. A second quit does not wait."""
        if self._stop_requested:
            self.exit()
            return
        self.request_stop()
