"""Broadcast event schemas.

Events are published by the runtime so observers (the dashboard, the
terminal demo, a chat bridge) can follow incidents in real time. The runtime
and its observers are decoupled: the runtime works whether or not anything
is listening, and the event stream is never persisted. Durable state lives
only in the incident store.

Every event carries a project_id so observers can filter client-side.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from schemas.agent_run import AgentRun
from schemas.incident import Incident, utcnow


class EventType(str, Enum):
    """The three event kinds on the stream.

    Extends str so values serialize to plain strings ("incident_updated")
    rather than "EventType.INCIDENT_UPDATED".
    """

    INCIDENT_UPDATED = "incident_updated"
    AGENT_RUN = "agent_run"
    LOG_LINE = "log_line"


class IncidentUpdatedEvent(BaseModel):
    """Full incident snapshot after a state change."""

    type: Literal[EventType.INCIDENT_UPDATED] = EventType.INCIDENT_UPDATED
    project_id: str | None = None
    incident: Incident
    status_message: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class AgentRunEvent(BaseModel):
    """A step run was recorded."""

    type: Literal[EventType.AGENT_RUN] = EventType.AGENT_RUN
    project_id: str | None = None
    incident_id: str
    run: AgentRun
    timestamp: datetime = Field(default_factory=utcnow)


class LogLineEvent(BaseModel):
    """One free-text log line, e.g. streamed from the sandbox verifier.

    Attributes:
        level: "INFO", "WARNING" or "ERROR".
        source: Label of the producer ("Verify", "System", ...).
    """

    type: Literal[EventType.LOG_LINE] = EventType.LOG_LINE
    project_id: str | None = None
    incident_id: str | None = None
    line: str
    level: str = "INFO"
    source: str = "System"
    timestamp: datetime = Field(default_factory=utcnow)


Event = Annotated[
    IncidentUpdatedEvent | AgentRunEvent | LogLineEvent,
    Field(discriminator="type"),
]
