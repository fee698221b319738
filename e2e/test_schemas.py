"""Schema validation tests.

Covers the incident, result, agent-run and event models, plus the LLM JSON
parsing helper that feeds them. Pure Pydantic, no I/O.
"""

import json
import uuid

import pytest
from pydantic import BaseModel, TypeAdapter, ValidationError

from schemas.agent_run import AgentName, AgentRun, AgentRunStatus
from schemas.events import AgentRunEvent, Event, EventType, IncidentUpdatedEvent, LogLineEvent
from schemas.incident import (
    TERMINAL_STATUSES,
    Incident,
    IncidentCandidate,
    IncidentMetadata,
    IncidentSource,
    IncidentStatus,
    Severity,
)
from schemas.result import FileUpdate, PatchResult, RootCauseResult, StepResult, VerificationResult
from utils.parse import LLMParseError, parse_llm_json


# ── Helpers ──────────────────────────────────────────────────────────────────

def make_incident(**kwargs) -> Incident:
    defaults = dict(
        title="Build Failed: CI",
        source=IncidentSource.GITHUB,
        severity=Severity.CRITICAL,
        fingerprint="a" * 32,
    )
    defaults.update(kwargs)
    return Incident(**defaults)


# ── Incident ──────────────────────────────────────────────────────────────────

class TestIncident:
    def test_defaults(self):
        incident = make_incident()
        assert incident.status == IncidentStatus.OPEN
        assert incident.occurrence_count == 1
        assert incident.metadata.branch == "main"
        uuid.UUID(incident.id)

    def test_each_instance_gets_unique_id(self):
        assert make_incident().id != make_incident().id

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {IncidentStatus.RESOLVED, IncidentStatus.FAILED}
        assert IncidentStatus.FAILED.is_terminal
        assert not IncidentStatus.AWAITING_APPROVAL.is_terminal

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            make_incident(status="DONE")

    def test_project_id_comes_from_metadata(self):
        assert make_incident(metadata=IncidentMetadata(project_id="p1")).project_id == "p1"

    def test_status_values_are_strings(self):
        assert make_incident().model_dump(mode="json")["status"] == "OPEN"


class TestIncidentMetadata:
    @pytest.mark.parametrize("error_source,requires", [
        ("ci-cd", False),
        ("production", True),
        ("nodejs", True),
        (None, True),
    ])
    def test_requires_approval(self, error_source, requires):
        assert IncidentMetadata(error_source=error_source).requires_approval is requires

    def test_unknown_fields_are_kept(self):
        meta = IncidentMetadata(pipeline="CI", tags=["env:prod"])
        assert meta.model_extra == {"pipeline": "CI", "tags": ["env:prod"]}
        assert IncidentMetadata.model_validate_json(meta.model_dump_json()).model_extra == meta.model_extra

    def test_step_outputs_are_typed(self):
        meta = IncidentMetadata.model_validate({
            "rca": {"analysis": "x", "confidence": 0.5},
            "patch": {"file_updates": [{"path": "a.py", "content": ""}]},
        })
        assert isinstance(meta.rca, RootCauseResult)
        assert meta.patch.files == ["a.py"]


class TestIncidentCandidate:
    def test_minimal_candidate(self):
        candidate = IncidentCandidate(title="t", message="m", project_id="p")
        assert candidate.source == IncidentSource.MANUAL
        assert candidate.severity == Severity.CRITICAL

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            IncidentCandidate(title="t", project_id="p")


# ── Step results ──────────────────────────────────────────────────────────────

class TestResults:
    def test_confidence_bounds(self):
        RootCauseResult(confidence=0.0)
        RootCauseResult(confidence=1.0)
        with pytest.raises(ValidationError):
            RootCauseResult(confidence=1.5)

    def test_patch_summary(self):
        patch = PatchResult(file_updates=[FileUpdate(path="a.py", content=""), FileUpdate(path="b.py", content="")])
        assert patch.summary() == "a.py, b.py"
        assert PatchResult(explanation="Fix it").summary() == "Fix it"
        assert PatchResult().summary() == "Patch generated"

    def test_failed_step_result(self):
        result = StepResult.failed("boom", logs=["line"], data=VerificationResult(success=False))
        assert result.success is False
        assert result.error == "boom"
        assert result.data.success is False


# ── AgentRun ──────────────────────────────────────────────────────────────────

class TestAgentRun:
    def test_complete_keeps_identity(self):
        run = AgentRun(incident_id="i", agent_name=AgentName.VERIFY, status=AgentRunStatus.WORKING, attempt=2)

        done = run.complete(False, "tests failed", {"logs": ["x"]})

        assert done.id == run.id
        assert done.attempt == 2
        assert done.status == AgentRunStatus.FAILED
        assert done.completed_at is not None
        assert run.status == AgentRunStatus.WORKING

    def test_agent_names(self):
        assert [n.value for n in AgentName] == ["RCA", "Patch", "Verify", "PR"]

    def test_terminal_run_statuses(self):
        assert AgentRunStatus.COMPLETED.is_terminal
        assert not AgentRunStatus.WORKING.is_terminal


# ── Events ────────────────────────────────────────────────────────────────────

class TestEvents:
    def test_event_type_values_are_strings(self):
        event = LogLineEvent(line="hello")
        assert event.model_dump(mode="json")["type"] == "log_line"
        assert EventType.AGENT_RUN.value == "agent_run"

    def test_discriminated_union_round_trip(self):
        adapter = TypeAdapter(Event)
        run = AgentRun(incident_id="i", agent_name=AgentName.RCA, status=AgentRunStatus.WORKING)
        events = [
            IncidentUpdatedEvent(incident=make_incident(), status_message="x"),
            AgentRunEvent(incident_id="i", run=run),
            LogLineEvent(line="hello", source="Verify"),
        ]
        for event in events:
            parsed = adapter.validate_json(event.model_dump_json())
            assert type(parsed) is type(event)

    def test_invalid_event_type_raises(self):
        with pytest.raises(ValidationError):
            TypeAdapter(Event).validate_python({"type": "unknown", "line": "x"})


# ── LLM JSON parsing ──────────────────────────────────────────────────────────

class _Answer(BaseModel):
    answer: str
    confidence: float = 0.0


class TestParseLLMJson:
    def test_plain_json(self):
        assert parse_llm_json('{"answer": "yes"}', _Answer).answer == "yes"

    def test_fenced_json(self):
        assert parse_llm_json('```json\n{"answer": "yes"}\n```', _Answer).answer == "yes"

    def test_json_inside_prose(self):
        parsed = parse_llm_json('Sure! Here it is: {"answer": "yes", "confidence": 3} Hope that helps.', _Answer)
        assert parsed.confidence == 1.0

    def test_fences_inside_values_are_kept(self):
        body = json.dumps({"answer": "```python\nx = 1\n```"})
        parsed = parse_llm_json(f"```json\n{body}\n```", _Answer)
        assert parsed.answer == "```python\nx = 1\n```"

    def test_non_numeric_confidence_becomes_zero(self):
        assert parse_llm_json('{"answer": "yes", "confidence": "high"}', _Answer).confidence == 0.0

    def test_no_json_raises_with_raw_text(self):
        with pytest.raises(LLMParseError) as excinfo:
            parse_llm_json("no json here", _Answer)
        assert excinfo.value.raw == "no json here"

    def test_schema_mismatch_raises(self):
        with pytest.raises(LLMParseError):
            parse_llm_json('{"other": 1}', _Answer)
