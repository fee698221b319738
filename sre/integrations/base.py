"""Collaborator contracts consumed by the step executors and the runtime.

The engine never imports a concrete adapter in core/. Steps receive these
protocols at construction time, so tests inject scripted fakes and
deployments choose real adapters in one place (main.create_runtime).

Every method is a network call with no timeout guarantee of its own; the
StepRunner wraps step execution in asyncio.wait_for.
"""

from typing import Callable, Protocol

from schemas.incident import Incident
from schemas.result import FileUpdate, PatchResult, RootCauseResult, VerificationResult

LogCallback = Callable[[str], None]


class ReasoningProvider(Protocol):
    """Generates root-cause narratives and code patches.

    Must tolerate partial context: analyze() on an incident with no repo
    linkage, and generate_patch() with an empty RootCauseResult, still
    return a best-effort answer.
    """

    async def analyze(self, incident: Incident) -> RootCauseResult:
        ...

    async def generate_patch(
        self,
        incident: Incident,
        rca: RootCauseResult,
        prior_failure_logs: list[str] | None = None,
    ) -> PatchResult:
        ...


class Verifier(Protocol):
    """Runs the project's build and tests in an isolated sandbox."""

    async def verify(
        self,
        repository: str,
        env: dict[str, str],
        credentials: str | None,
        branch: str,
        on_log: LogCallback | None = None,
    ) -> VerificationResult:
        ...


class CodeHostClient(Protocol):
    async def create_branch(self, owner: str, repo: str, base: str, branch: str) -> None:
        ...

    async def commit_files(
        self,
        owner: str,
        repo: str,
        branch: str,
        files: list[FileUpdate],
        message: str,
    ) -> None:
        ...

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> str:
        """Open a pull request and return its URL."""
        ...


class ChatNotifier(Protocol):
    async def send_decision_request(self, incident: Incident) -> str:
        """Post an approve/reject request and return a thread reference."""
        ...

    async def reply_in_thread(self, message_ref: str, text: str) -> None:
        ...

    async def post(self, text: str) -> None:
        """Post a standalone message to the project channel."""
        ...


class SecretStore(Protocol):
    def get(self, project_id: str | None, kind: str) -> str | None:
        """Return the secret of ``kind`` for a project, or None if absent."""
        ...


# Secret kinds looked up by the engine.
SECRET_CODE_HOST_TOKEN = "github_token"
SECRET_CHAT_TOKEN = "slack_bot_token"
SECRET_CHAT_CHANNEL = "slack_channel_id"


NotifierFactory = Callable[[str | None], ChatNotifier | None]
