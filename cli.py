"""Sift — CLI replay runner.

Replays a fixture alert stream through the full pipeline and renders live
stage panels in the terminal using Rich. Shows the incident table and the
remediation actions when the replay finishes.

Time is driven by the fixture: "tick" and "sweep" steps carry their own
timestamps, so a replay of fifteen minutes of alerts takes a second.
Actions go to the dry-run executor; nothing real is touched.

Usage:
    python cli.py [fixture.json] [--policy policy.example.yaml]
"""

import argparse
import asyncio
import json
import pathlib
from datetime import datetime

from rich.console import Console
from rich.table import Table

from core.pipeline import SiftPipeline
from core.policy_store import PolicyStore
from display.live import LiveDisplay
from executors.dry_run import DryRunExecutor
from ingest.adapters import parse_timestamp

console = Console()

_ROOT = pathlib.Path(__file__).parent
_FIXTURE = _ROOT / "fixtures" / "alerts_demo.json"
_POLICY = _ROOT / "policy.example.yaml"


class _ReplayClock:
    """Pipeline clock that only moves when the fixture says so."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, to: datetime) -> None:
        self.now = max(self.now, to)


# ── Results tables ────────────────────────────────────────────────────────────

def _print_results(pipeline: SiftPipeline) -> None:
    """Render the final incident table and the action log."""
    incidents = pipeline.query.incidents()
    if not incidents:
        console.print("\n[yellow]No incidents produced.[/yellow]")
        return

    table = Table(title="Incidents", show_lines=True, border_style="bright_black")
    table.add_column("Incident", style="bold",  min_width=16)
    table.add_column("State",    width=12,      justify="center")
    table.add_column("Severity", width=10,      justify="center")
    table.add_column("Score",    width=7,       justify="right")
    table.add_column("Members",  style="dim",   min_width=28)

    for incident in incidents:
        sev_color = "red" if incident.severity.value == "critical" else "yellow" if incident.severity.value == "warning" else "dim"
        members = ", ".join(f"{m.resource}/{m.metric}" for m in incident.current_members())
        table.add_row(
            incident.incident_id,
            incident.state.value,
            f"[{sev_color}]{incident.severity.value}[/{sev_color}]",
            f"{incident.correlation_score:.2f}",
            members,
        )

    console.print()
    console.print(table)

    actions = pipeline.query.actions()
    if actions:
        log = Table(title="Remediation", border_style="bright_black")
        log.add_column("Action",   style="dim")
        log.add_column("Incident", style="dim")
        log.add_column("Kind")
        log.add_column("Resource")
        log.add_column("Status", justify="center")
        log.add_column("Attempts", justify="right")
        for action in actions:
            color = "green" if action.status.value == "succeeded" else "red" if action.status.value == "failed" else "yellow"
            log.add_row(
                action.action_id, action.incident_id, action.kind.value, action.resource,
                f"[{color}]{action.status.value}[/{color}]", str(action.attempts),
            )
        console.print(log)

    flagged = [i for i in incidents if i.needs_human]
    for incident in flagged:
        console.print(f"[bold red]⚠  {incident.incident_id} needs a human:[/bold red] {incident.human_reason}")
    console.print(f"\n[dim]policy v{pipeline.policy_store.version} ({pipeline.policy_store.current.label})[/dim]\n")


# ── Entry point ───────────────────────────────────────────────────────────────

async def _replay(pipeline: SiftPipeline, clock: _ReplayClock, steps: list[dict]) -> None:
    for step in steps:
        op = step["op"]
        if "at" in step:
            clock.advance(parse_timestamp(step["at"]))

        if op == "ingest":
            await pipeline.ingest(step["source"], step["payload"])
        elif op == "tick":
            await pipeline.tick(clock.now)
        elif op == "sweep":
            await pipeline.sweep(clock.now)
        elif op == "settle":
            await pipeline.dispatcher.wait_idle()
        else:
            console.print(f"[yellow]Unknown fixture step '{op}' skipped.[/yellow]")
        # let the display catch up between steps
        await asyncio.sleep(0.05)

    await pipeline.dispatcher.wait_idle()


async def _run(fixture_path: pathlib.Path, policy_path: pathlib.Path) -> None:
    with open(fixture_path) as f:
        fixture = json.load(f)

    clock = _ReplayClock(parse_timestamp(fixture["start"]))
    event_queue: asyncio.Queue = asyncio.Queue()
    pipeline = SiftPipeline(
        policy_store=PolicyStore(policy_path),
        executor=DryRunExecutor(),
        event_queue=event_queue,
        clock=clock,
    )
    display = LiveDisplay()

    console.rule("[bold]Sift[/bold]")
    console.print(f"  fixture  [cyan]{fixture_path.name}[/cyan]  {fixture.get('description', '')}")
    console.print(f"  policy   [cyan]v{pipeline.policy_store.version}[/cyan] from {policy_path}")
    console.print(f"  steps    [cyan]{len(fixture['steps'])}[/cyan]")
    console.print()

    with display.make_live() as live:
        consumer = asyncio.create_task(display.consume(event_queue, live))
        await _replay(pipeline, clock, fixture["steps"])
        await event_queue.put(None)   # sentinel: tell consumer to stop
        await consumer

    _print_results(pipeline)


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay a fixture alert stream through Sift.")
    parser.add_argument("fixture", nargs="?", default=str(_FIXTURE))
    parser.add_argument("--policy", default=str(_POLICY))
    args = parser.parse_args()
    asyncio.run(_run(pathlib.Path(args.fixture), pathlib.Path(args.policy)))


if __name__ == "__main__":
    main()
