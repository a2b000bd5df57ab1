"""TUI Dashboard for opsfleet."""

from dataclasses import dataclass

from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .operator import Operator
from .results import MachineState, Result


STATUS_ICONS = {
    MachineState.IDLE: ("·", "dim"),
    MachineState.DIALING: ("…", "yellow"),
    MachineState.AUTHENTICATING: ("…", "yellow"),
    MachineState.SESSION_OPEN: ("▶", "yellow"),
    MachineState.EXECUTING: ("▶", "yellow"),
    MachineState.SUCCEEDED: ("✓", "green"),
    MachineState.FAILED: ("✗", "red"),
    MachineState.CLOSED: ("■", "dim"),
}


class MachinePanel(Static):
    """A panel displaying state and output for a single machine."""

    status: reactive[MachineState] = reactive(MachineState.IDLE)

    def __init__(self, machine_name: str, target: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.machine_name = machine_name
        self.target = target
        self.final_status = MachineState.IDLE

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.id}")
        yield RichLog(
            id=f"log-{self.id}",
            highlight=True,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        shown = self.final_status if self.status is MachineState.CLOSED else self.status
        icon, color = STATUS_ICONS.get(shown, ("?", "white"))
        return (
            f"[{color}]{icon}[/] [{color}][bold]{self.machine_name}[/bold][/] "
            f"[{color}]{self.target}[/] [dim]{shown.value}[/]"
        )

    def watch_status(self, status: MachineState) -> None:
        """Update header when status changes."""
        if status.is_terminal:
            self.final_status = status
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.id}", Label)
        header.update(self._get_header())

    def show_result(self, result: Result) -> None:
        """Write the captured output and any error into this panel."""
        log = self.query_one(f"#log-{self.id}", RichLog)
        for line in result.output.splitlines():
            log.write(line)
        if result.success:
            log.write(f"[green]completed in {result.elapsed:.2f}s[/green]")
        else:
            log.write(f"[bold red]ERROR ({result.error_kind}): {result.error}[/bold red]")


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return f"Progress: {self.completed}/{self.total} machines complete | {status} | Press 'q' to quit"


@dataclass
class MachineStatusChange(Message):
    """Message for machine state change, keyed by target index."""
    index: int
    status: MachineState


@dataclass
class RunFinished(Message):
    """Message carrying the results of the whole run."""
    results: list


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    MachinePanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    MachinePanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    MachinePanel RichLog {
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

    def __init__(self, operator: Operator, command: str, targets=None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.operator = operator
        self.command = command
        self.targets = list(targets) if targets else operator.names
        self.panels: list[MachinePanel] = []
        self.results: list[Result] | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        # One panel per target, in target order; duplicates get their own panel
        for i, name in enumerate(self.targets):
            machine = self.operator.get(name)
            target = f"{machine.username}@{machine.address}" if machine else "not registered"
            panel = MachinePanel(name, target, id=f"panel-{i}")
            self.panels.append(panel)
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        self.title = f"opsfleet: {self.command}"
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.targets)

        # Start execution using Textual's worker system
        self._worker = self.run_worker(self._run_execution(), exclusive=True, thread=True)

    async def _run_execution(self) -> None:
        """Run the command on the fleet and hand the results to the UI."""
        results = await self.operator.run(
            self.command, self.targets, on_target_status=self._on_status
        )
        self.post_message(RunFinished(results))

    def _on_status(self, index: int, status: MachineState) -> None:
        """Handle state change for a target - posts message to main thread."""
        self.post_message(MachineStatusChange(index, status))

    def on_machine_status_change(self, message: MachineStatusChange) -> None:
        """Handle MachineStatusChange message in main thread."""
        self.panels[message.index].status = message.status

        # Update completed count
        if message.status.is_terminal:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1

    def on_run_finished(self, message: RunFinished) -> None:
        """Show every result once the whole run has finished."""
        self.results = message.results
        for panel, result in zip(self.panels, message.results):
            panel.show_result(result)
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.running = False

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
