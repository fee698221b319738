"""AgentRun schema.

An AgentRun is the immutable audit record of one step execution attempt.
The runtime inserts a WORKING record immediately before invoking a step
and completes that same record (COMPLETED or FAILED) afterwards. Retries
produce new records, so the timeline shows the full self-healing history.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from schemas.incident import utcnow


class AgentName(str, Enum):
    RCA = "RCA"
    PATCH = "Patch"
    VERIFY = "Verify"
    PR = "PR"


class AgentRunStatus(str, Enum):
    IDLE = "IDLE"
    WORKING = "WORKING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentRunStatus.COMPLETED, AgentRunStatus.FAILED)


class AgentRun(BaseModel):
    """One recorded step execution.

    Frozen: completing a run produces a new copy with the same id via
    ``complete``. The store accepts exactly one completion per run.

    Attributes:
        attempt: Attempt number within the self-healing loop. Always 1 for
            RCA and PR.
        thoughts: Narrative or log text describing what happened.
        output: Structured step output (model_dump of the step payload).
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    incident_id: str
    agent_name: AgentName
    status: AgentRunStatus
    thoughts: str = ""
    output: dict = Field(default_factory=dict)
    attempt: int = 1
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    def complete(self, success: bool, thoughts: str, output: dict | None = None) -> "AgentRun":
        """Return the terminal copy of this run."""
        return self.model_copy(
            update={
                "status": AgentRunStatus.COMPLETED if success else AgentRunStatus.FAILED,
                "thoughts": thoughts,
                "output": output or {},
                "completed_at": utcnow(),
            }
        )
