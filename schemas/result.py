"""Step result schemas.

Defines the typed output of each step executor (RootCauseResult,
PatchResult, VerificationResult, PullRequestResult) and the uniform
StepResult envelope the runtime receives from every step. The runtime only
looks at the envelope to decide the next transition; the typed payload is
what gets persisted into incident metadata.
"""

from pydantic import BaseModel, Field


class RootCauseResult(BaseModel):
    """Output of the root-cause analysis step.

    Attributes:
        analysis: Narrative explanation of the fault.
        hints: Structured hints the provider extracted (suspect files,
            technology stack, recommended fix). May be empty.
        confidence: Provider's confidence in the analysis, 0.0-1.0.
    """

    analysis: str = ""
    hints: dict = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class FileUpdate(BaseModel):
    """Full replacement content for one file in the repository."""

    path: str
    content: str


class PatchResult(BaseModel):
    """Output of the patch generation step.

    Attributes:
        file_updates: Complete new contents for each changed file.
        explanation: Why the change fixes the fault.
        attempt: Which generation this is. 1 for the first patch, 2 and 3
            for regenerations fed with verification failure logs.
    """

    file_updates: list[FileUpdate] = Field(default_factory=list)
    explanation: str = ""
    attempt: int = 1

    @property
    def files(self) -> list[str]:
        return [f.path for f in self.file_updates]

    def summary(self, limit: int = 300) -> str:
        if self.explanation:
            return self.explanation[:limit]
        return ", ".join(self.files)[:limit] or "Patch generated"


class VerificationResult(BaseModel):
    """Output of the verification step.

    Attributes:
        success: Whether build and tests passed.
        logs: Sandbox output. On failure these feed the next patch attempt.
        attempt: Verification attempt number, 1-3.
        branch: Branch that was verified.
    """

    success: bool
    logs: list[str] = Field(default_factory=list)
    attempt: int = 1
    branch: str | None = None


class PullRequestResult(BaseModel):
    url: str
    branch: str


class StepResult(BaseModel):
    """Uniform envelope returned by every step executor.

    Attributes:
        success: Whether the step produced a usable result.
        data: The typed step payload. None on failure, except Verify, which
            carries its VerificationResult either way so failure logs reach
            the retry loop.
        error: Short failure reason. Persisted as the AgentRun thoughts.
        logs: Free-form lines produced while running.
    """

    success: bool
    data: RootCauseResult | PatchResult | VerificationResult | PullRequestResult | None = None
    error: str | None = None
    logs: list[str] = Field(default_factory=list)

    @classmethod
    def failed(cls, error: str, logs: list[str] | None = None, data=None) -> "StepResult":
        return cls(success=False, error=error, logs=logs or [], data=data)
