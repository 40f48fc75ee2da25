"""Rich live display — one panel per pipeline stage plus an incident tally.

The display only reads the telemetry queue. SiftPipeline puts PipelineEvents
into it whether or not anything is listening, so the replay behaves the same
with or without a terminal attached.

Usage:
    event_queue = asyncio.Queue()
    pipeline = SiftPipeline(event_queue=event_queue)
    display = LiveDisplay()

    with display.make_live() as live:
        consumer = asyncio.create_task(display.consume(event_queue, live))
        ...  # feed alerts
        await event_queue.put(None)  # sentinel: tells consume() to stop
        await consumer
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field

from rich.columns import Columns
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from schemas.events import EventType, PipelineEvent, Stage
from schemas.incident import IncidentState

MAX_LINES = 5

_WARNING_EVENTS = {EventType.ALERT_DROPPED, EventType.RATE_LIMITED}
_ERROR_EVENTS = {EventType.ERROR, EventType.POLICY_REJECTED}

_STATE_COLORS = {
    IncidentState.OPEN: "cyan",
    IncidentState.ESCALATED: "yellow",
    IncidentState.REMEDIATING: "magenta",
    IncidentState.RESOLVED: "green",
    IncidentState.CLOSED: "bright_black",
}


@dataclass
class _StagePanel:
    stage: Stage
    health: str = "idle"    # idle | active | warning | error
    count: int = 0
    lines: list[tuple[str, str]] = field(default_factory=list)   # (marker, text)

    def push(self, marker: str, text: str) -> None:
        self.lines.append((marker, text))
        del self.lines[:-MAX_LINES]


class LiveDisplay:
    """Renders pipeline telemetry into stage panels.

    Attributes:
        _panels: Stage -> panel state, in pipeline order.
        _incidents: Incident id -> last known state, rebuilt from
            INCIDENT_CREATED and INCIDENT_TRANSITION events.
        _policy_version: Highest policy version seen on any event.
    """

    def __init__(self, stages: list[Stage] | None = None) -> None:
        self._panels = {stage: _StagePanel(stage) for stage in (stages or list(Stage))}
        self._incidents: dict[str, IncidentState] = {}
        self._policy_version = 0

    def make_live(self) -> Live:
        """Return a Rich Live context manager ready to use with `with`."""
        return Live(self._render(), refresh_per_second=12, transient=False)

    async def consume(self, queue: asyncio.Queue, live: Live) -> None:
        """Apply events from the queue to the layout until the None sentinel."""
        while (event := await queue.get()) is not None:
            self._apply(event)
            live.update(self._render())

    # ── Private ───────────────────────────────────────────────────────────────

    def _apply(self, event: PipelineEvent) -> None:
        self._policy_version = max(self._policy_version, event.policy_version)
        self._track_incident(event)

        panel = self._panels.get(event.stage)
        if panel is None:
            return
        panel.count += 1
        stamp = event.timestamp.strftime("%H:%M:%S")

        if event.event_type in _ERROR_EVENTS:
            panel.health = "error"
            panel.push("✗", event.message)
        elif event.event_type in _WARNING_EVENTS:
            if panel.health != "error":
                panel.health = "warning"
            panel.push("!", event.message)
        else:
            if panel.health == "idle":
                panel.health = "active"
            panel.push("→", f"{stamp} {_short(event.subject)} {event.message}")

    def _track_incident(self, event: PipelineEvent) -> None:
        if event.event_type == EventType.INCIDENT_CREATED:
            self._incidents[event.subject] = IncidentState.OPEN
        elif event.event_type == EventType.INCIDENT_TRANSITION and "current" in event.detail:
            self._incidents[event.subject] = IncidentState(event.detail["current"])

    def _render_panel(self, panel: _StagePanel) -> Panel:
        icon, border = {
            "idle":    ("[dim]○[/dim]", "dim"),
            "active":  ("[bold green]●[/bold green]", "green"),
            "warning": ("[bold yellow]![/bold yellow]", "yellow"),
            "error":   ("[bold red]✗[/bold red]", "red"),
        }[panel.health]

        body = [Text.from_markup(f"{icon}  [dim]{panel.count} event(s)[/dim]")]
        for marker, text in panel.lines:
            style = "red" if marker == "✗" else "yellow" if marker == "!" else "dim"
            body.append(Text(f"  {marker} {text}", style=style))

        return Panel(Group(*body), title=f"[bold]{panel.stage.value}[/bold]", border_style=border, width=60)

    def _render_tally(self) -> Text:
        counts = Counter(self._incidents.values())
        tally = Text(f"policy v{self._policy_version}  ", style="dim")
        for state in IncidentState:
            tally.append(f"{state.value} {counts.get(state, 0)}  ", style=_STATE_COLORS[state])
        return tally

    def _render(self) -> Group:
        panels = [self._render_panel(p) for p in self._panels.values()]
        rows = [Columns(panels[i : i + 2], equal=True) for i in range(0, len(panels), 2)]
        return Group(*rows, self._render_tally())


def _short(subject: str) -> str:
    return subject if len(subject) <= 16 else subject[:14] + "…"
