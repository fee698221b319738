"""Guardian — CLI demo runner.

Runs one incident end-to-end against scripted collaborators and renders
live step panels in the terminal using Rich. Shows the agent-run timeline
when the incident reaches a terminal state.

Usage:
    uv run python cli.py                               # CI failure, auto-fix
    uv run python cli.py --fail-verifies 2             # self-healing retries
    uv run python cli.py --source production           # approval gate, auto-approved
    uv run python cli.py --source production --reject

Nothing leaves the machine: the reasoning provider, sandbox, GitHub and
Slack are all stubs from stubs.py. The store is a temporary SQLite file.
"""

import argparse
import asyncio
import pathlib
import tempfile

from rich.console import Console
from rich.table import Table

from core.runtime import IncidentRuntime
from core.store import IncidentStore
from display.live import LiveDisplay
from schemas.agent_run import AgentRunStatus
from schemas.incident import ERROR_SOURCE_CI, ERROR_SOURCE_PRODUCTION, IncidentStatus
from stubs import (
    RecordingNotifier,
    ScriptedReasoning,
    ScriptedVerifier,
    make_candidate,
    register_stub_steps,
)

console = Console()

STEP_DELAY_SECONDS = 0.4
APPROVAL_DELAY_SECONDS = 1.5


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one incident through the Guardian workflow.")
    parser.add_argument(
        "--source",
        choices=[ERROR_SOURCE_CI, ERROR_SOURCE_PRODUCTION],
        default=ERROR_SOURCE_CI,
        help="ci-cd fixes autonomously; production waits for a decision.",
    )
    parser.add_argument(
        "--fail-verifies",
        type=int,
        default=0,
        metavar="N",
        help="Make the first N sandbox runs fail.",
    )
    parser.add_argument(
        "--reject",
        action="store_true",
        help="Reject instead of approving a production fix.",
    )
    return parser.parse_args(argv)


# ── Timeline table ────────────────────────────────────────────────────────────

def _print_timeline(incident, runs) -> None:
    """Render the recorded agent runs and the final incident status."""
    table = Table(title="Agent Runs", show_lines=True, border_style="bright_black")
    table.add_column("#",        style="dim",  width=3, justify="right")
    table.add_column("Step",     style="bold", width=8)
    table.add_column("Attempt",  width=8, justify="center")
    table.add_column("Status",   width=10, justify="center")
    table.add_column("Thoughts", style="dim", min_width=40)

    for i, run in enumerate(runs, 1):
        color = {
            AgentRunStatus.COMPLETED: "green",
            AgentRunStatus.FAILED: "red",
        }.get(run.status, "yellow")
        table.add_row(
            str(i),
            run.agent_name.value,
            str(run.attempt),
            f"[{color}]{run.status.value}[/{color}]",
            run.thoughts[:120],
        )

    console.print()
    console.print(table)

    color = "green" if incident.status == IncidentStatus.RESOLVED else "red"
    console.print(f"\n[bold {color}]{incident.status.value}[/bold {color}]  {incident.status_message or ''}")
    if incident.metadata.pr_url:
        console.print(f"[dim]pull request: {incident.metadata.pr_url}[/dim]")
    console.print(f"[dim]incident: {incident.id}[/dim]\n")


# ── Entry point ───────────────────────────────────────────────────────────────

async def _decide(runtime: IncidentRuntime, incident_id: str, reject: bool) -> None:
    """Play the human at the approval gate once the incident is suspended."""
    while True:
        incident = await runtime.get_incident(incident_id)
        if incident.status == IncidentStatus.AWAITING_APPROVAL:
            break
        if incident.status.is_terminal:
            return
        await asyncio.sleep(0.1)

    await asyncio.sleep(APPROVAL_DELAY_SECONDS)
    if reject:
        await runtime.reject(incident_id, rejected_by="cli", reason="Demo rejection")
    else:
        await runtime.approve(incident_id, approved_by="cli")


async def _run(args: argparse.Namespace) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        notifier = RecordingNotifier()
        runtime = IncidentRuntime(
            store=IncidentStore(pathlib.Path(tmp) / "guardian.db"),
            notifiers=lambda project_id: notifier,
        )
        register_stub_steps(
            runtime,
            reasoning=ScriptedReasoning(delay=STEP_DELAY_SECONDS),
            verifier=ScriptedVerifier(failures=args.fail_verifies, delay=STEP_DELAY_SECONDS),
        )

        candidate = make_candidate(error_source=args.source)
        console.rule("[bold]Guardian[/bold]")
        console.print(f"  incident  [cyan]{candidate.title}[/cyan]")
        console.print(f"  source    [cyan]{args.source}[/cyan]")
        console.print()

        display = LiveDisplay()
        subscription = runtime.broadcaster.subscribe(candidate.project_id)

        with display.make_live() as live:
            consumer = asyncio.create_task(display.consume(subscription, live))
            submitted = await runtime.submit_incident(candidate)
            await runtime.wait_idle()

            if args.source == ERROR_SOURCE_PRODUCTION:
                await _decide(runtime, submitted.incident_id, args.reject)
                await runtime.wait_idle()

            subscription.close()
            await consumer

        incident, runs = await runtime.get_timeline(submitted.incident_id)
        _print_timeline(incident, runs)
        for text in notifier.posts + [t for _, t in notifier.replies]:
            console.print(f"[dim]slack: {text}[/dim]")


def main(argv: list[str] | None = None) -> None:
    asyncio.run(_run(_parse_args(argv)))


if __name__ == "__main__":
    main()
