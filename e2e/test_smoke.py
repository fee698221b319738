"""Smoke tests for the terminal demo and the live display."""

from rich.console import Console

import cli
from display.live import LiveDisplay
from schemas.agent_run import AgentName, AgentRun, AgentRunStatus
from schemas.events import AgentRunEvent, IncidentUpdatedEvent, LogLineEvent
from schemas.incident import Incident, IncidentStatus
from stubs import make_candidate


def test_cli_arguments():
    args = cli._parse_args(["--source", "production", "--fail-verifies", "2", "--reject"])
    assert args.source == "production"
    assert args.fail_verifies == 2
    assert args.reject is True


def test_display_tracks_the_first_incident():
    display = LiveDisplay()
    candidate = make_candidate()
    incident = Incident(
        title=candidate.title,
        source=candidate.source,
        severity=candidate.severity,
        fingerprint="f" * 32,
        status=IncidentStatus.VERIFY_IN_PROGRESS,
        metadata=candidate.metadata,
    )
    run = AgentRun(incident_id=incident.id, agent_name=AgentName.VERIFY, status=AgentRunStatus.WORKING, attempt=2)

    display._apply(IncidentUpdatedEvent(incident=incident, status_message="Verifying [1/3]"))
    display._apply(AgentRunEvent(incident_id=incident.id, run=run))
    display._apply(LogLineEvent(incident_id=incident.id, line="$ npm test", source="Verify"))
    display._apply(LogLineEvent(incident_id="someone-else", line="ignored", source="Verify"))

    state = display._states["Verify"]
    assert state.status == "running"
    assert state.attempt == 2
    assert state.messages == ["attempt 2...", "→ $ npm test"]

    console = Console(record=True, width=120)
    console.print(display._render())
    assert "VERIFY_IN_PROGRESS" in console.export_text()


def test_cli_demo_runs_end_to_end(monkeypatch):
    monkeypatch.setattr(cli, "STEP_DELAY_SECONDS", 0)
    monkeypatch.setattr(cli, "APPROVAL_DELAY_SECONDS", 0)
    monkeypatch.setattr(cli, "console", Console(record=True, width=140))

    cli.main(["--fail-verifies", "1"])

    output = cli.console.export_text()
    assert "RESOLVED" in output
    assert "pull request: https://github.com/acme/shop-api/pull/1" in output
