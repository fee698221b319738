"""Rich live display — one panel per workflow step, updating in real time.

The display layer is fully decoupled from the runtime. It reads events from
an EventBroadcaster subscription and renders them into a live terminal
layout. The runtime publishes whether or not a display is attached.

Usage:
    display = LiveDisplay()
    subscription = runtime.broadcaster.subscribe()

    with display.make_live() as live:
        consumer = asyncio.create_task(display.consume(subscription, live))
        await runtime.submit_incident(candidate)
        await runtime.wait_idle()
        subscription.close()  # ends consume()
        await consumer
"""

from dataclasses import dataclass, field

from rich.columns import Columns
from rich.console import Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from core.broadcaster import Subscription
from schemas.agent_run import AgentName, AgentRunStatus
from schemas.events import AgentRunEvent, Event, IncidentUpdatedEvent, LogLineEvent


# ── Per-step state ────────────────────────────────────────────────────────────

@dataclass
class _StepState:
    """Mutable state for one step's panel.

    Updated by _apply() each time an event arrives. The display reads this
    to re-render the panel on every refresh tick.
    """
    name: str
    status: str = "waiting"    # waiting | running | complete | error
    attempt: int = 1
    elapsed_ms: float = 0.0
    messages: list[str] = field(default_factory=list)


# ── Display ───────────────────────────────────────────────────────────────────

class LiveDisplay:
    """Manages the Rich live layout for the incident being followed.

    Attributes:
        _states: Dict of step name → _StepState, updated as events arrive.
        _incident_line: Current incident status, shown above the panels.
        _incident_id: The incident being followed. Set from the first
            incident event; events for other incidents are ignored.
    """

    def __init__(self, steps: list[AgentName] | None = None) -> None:
        order = steps or list(AgentName)
        self._states = {s.value: _StepState(name=s.value) for s in order}
        self._order = [s.value for s in order]
        self._incident_line = "[dim]waiting for incident...[/dim]"
        self._incident_id: str | None = None

    def make_live(self) -> Live:
        """Return a Rich Live context manager ready to use with `with`."""
        return Live(self._render(), refresh_per_second=12, transient=False)

    async def consume(self, subscription: Subscription, live: Live) -> None:
        """Read events and update the display until the subscription closes."""
        async for event in subscription:
            self._apply(event)
            live.update(self._render())

    # ── Private ───────────────────────────────────────────────────────────────

    def _apply(self, event: Event) -> None:
        """Update state from an incoming event."""
        if isinstance(event, IncidentUpdatedEvent):
            if self._incident_id is None:
                self._incident_id = event.incident.id
            if event.incident.id != self._incident_id:
                return
            incident = event.incident
            self._incident_line = (
                f"[bold]{incident.status.value}[/bold]  {escape(event.status_message or '')}"
                f"  [dim](seen {incident.occurrence_count}x)[/dim]"
            )
            return

        if isinstance(event, AgentRunEvent):
            if event.incident_id != self._incident_id:
                return
            run = event.run
            state = self._states.get(run.agent_name.value)
            if state is None:
                return
            state.attempt = run.attempt
            if run.status == AgentRunStatus.WORKING:
                state.status = "running"
                state.messages.append(f"attempt {run.attempt}...")
            elif run.status == AgentRunStatus.COMPLETED:
                state.status = "complete"
                state.messages.append(f"✓ {_first_line(run.thoughts) or 'done'}")
            elif run.status == AgentRunStatus.FAILED:
                state.status = "error"
                state.messages.append(f"✗ {_first_line(run.thoughts) or 'failed'}")
            if run.completed_at is not None:
                state.elapsed_ms = (run.completed_at - run.started_at).total_seconds() * 1000

        elif isinstance(event, LogLineEvent):
            if event.incident_id != self._incident_id:
                return
            state = self._states.get(event.source)
            if state is None:
                return
            state.messages.append(f"→ {event.line}")

        else:
            return

        # Keep only the last 4 lines so panels don't grow unbounded
        state.messages = state.messages[-4:]

    def _render_panel(self, state: _StepState) -> Panel:
        """Build a Rich Panel for one step from its current state."""
        icons = {
            "waiting":  "[dim]○[/dim]",
            "running":  "[bold yellow]●[/bold yellow]",
            "complete": "[bold green]✓[/bold green]",
            "error":    "[bold red]✗[/bold red]",
        }
        border_styles = {
            "waiting":  "dim",
            "running":  "yellow",
            "complete": "green",
            "error":    "red",
        }

        icon = icons.get(state.status, "○")
        elapsed = f"[dim][{state.elapsed_ms / 1000:.2f}s][/dim]"
        header = Text.from_markup(f"{elapsed}  {icon}  [dim]attempt {state.attempt}[/dim]")

        lines: list[Text] = [header]
        for msg in state.messages:
            lines.append(Text(f"  {msg}", style="dim"))

        return Panel(
            Group(*lines),
            title=f"[bold]{state.name}[/bold]",
            border_style=border_styles.get(state.status, "dim"),
            width=52,
        )

    def _render(self) -> Group:
        """Build the full layout: status line, then panels in rows of two."""
        panels = [self._render_panel(self._states[name]) for name in self._order]
        rows = [Text.from_markup(self._incident_line)]
        for i in range(0, len(panels), 2):
            rows.append(Columns(panels[i : i + 2], equal=True))
        return Group(*rows)


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0][:60] if text.strip() else ""
