"""Incident schemas.

Defines the unit of work that flows through the orchestration engine. An
Incident is created once per distinct fault (deduplicated by fingerprint),
mutated only by the workflow runtime, and never physically deleted.

The metadata bag of the original pipeline is a typed model here: every step
output the workflow accumulates has a named field, so a missing RCA or patch
shows up as None rather than a KeyError deep inside a step.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from schemas.result import PatchResult, RootCauseResult, VerificationResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentSource(str, Enum):
    """Where the fault signal came from."""

    GITHUB = "GITHUB"
    JENKINS = "JENKINS"
    PRODUCTION_WATCHER = "PRODUCTION_WATCHER"
    LOG_INGESTION = "LOG_INGESTION"
    MANUAL = "MANUAL"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class IncidentStatus(str, Enum):
    """Workflow states.

    The happy path is OPEN → RCA → PATCH → (AWAITING_APPROVAL | VERIFY) →
    PR_CREATION → RESOLVED. FAILED is reachable from every in-progress state.
    RESOLVED and FAILED are terminal and sticky.
    """

    OPEN = "OPEN"
    RCA_IN_PROGRESS = "RCA_IN_PROGRESS"
    PATCH_IN_PROGRESS = "PATCH_IN_PROGRESS"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    VERIFY_IN_PROGRESS = "VERIFY_IN_PROGRESS"
    PR_CREATION_IN_PROGRESS = "PR_CREATION_IN_PROGRESS"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.FAILED})

ERROR_SOURCE_CI = "ci-cd"
ERROR_SOURCE_PRODUCTION = "production"


class IncidentMetadata(BaseModel):
    """Project linkage, routing classification, and accumulated step outputs.

    Attributes:
        project_id: Owning project. Observers filter the event stream on it.
        owner / repo: Code-hosting coordinates used by Verify and PR.
        credentials_ref: Name of the credential in the secret store. The raw
            secret is never stored on the incident.
        error_source: "ci-cd" routes to the auto-fix path. Anything else,
            including None, routes to the approval path.
        branch: Base branch for verification and the pull request.
        env: Non-secret environment variables passed to the verifier.
        rca / patch / verification: Latest result of each step.
        pr_url: Pull request opened for the fix.
        awaiting_approval: Set while suspended at the approval gate.
        approved_by / rejected_by / rejection_reason: Gate decision audit.
        verify_attempts: Verification attempts made so far.
        chat_message_ref: Thread reference of the decision request, if one
            was sent, so follow-ups land in the same thread.
    """

    model_config = ConfigDict(extra="allow")

    project_id: str | None = None
    owner: str | None = None
    repo: str | None = None
    credentials_ref: str | None = None
    error_source: str | None = None
    service: str | None = None
    log_source: str | None = None
    branch: str = "main"
    env: dict[str, str] = Field(default_factory=dict)

    rca: RootCauseResult | None = None
    patch: PatchResult | None = None
    verification: VerificationResult | None = None
    pr_url: str | None = None

    awaiting_approval: bool = False
    approved_by: str | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    verify_attempts: int = 0
    chat_message_ref: str | None = None

    @property
    def requires_approval(self) -> bool:
        return self.error_source != ERROR_SOURCE_CI


class Incident(BaseModel):
    """One tracked instance of a detected fault."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str = ""
    source: IncidentSource
    severity: Severity
    status: IncidentStatus = IncidentStatus.OPEN
    status_message: str | None = None
    fingerprint: str
    occurrence_count: int = 1
    last_seen: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: IncidentMetadata = Field(default_factory=IncidentMetadata)

    @property
    def project_id(self) -> str | None:
        return self.metadata.project_id


class IncidentCandidate(BaseModel):
    """A fault signal submitted by a detector, before deduplication.

    Attributes:
        message: The raw fault text. Only this and project_id feed the
            fingerprint, so two candidates with different titles but the
            same underlying message still merge.
    """

    title: str
    message: str
    project_id: str
    description: str = ""
    source: IncidentSource = IncidentSource.MANUAL
    severity: Severity = Severity.CRITICAL
    metadata: IncidentMetadata = Field(default_factory=IncidentMetadata)


class SubmitResult(BaseModel):
    incident_id: str
    duplicate: bool
    occurrence_count: int = 1
