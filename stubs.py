"""Scripted collaborators for the terminal demo and the tests.

Each stub satisfies one protocol from sre.integrations.base, sleeps for a
configurable delay so live panels have something to show, and records the
calls it received so tests can assert on them. None of them touch the
network.
"""

import asyncio

from core.errors import IntegrationError
from schemas.incident import (
    ERROR_SOURCE_CI,
    Incident,
    IncidentCandidate,
    IncidentMetadata,
    IncidentSource,
)
from schemas.result import FileUpdate, PatchResult, RootCauseResult, VerificationResult
from sre.agents import PatchAgent, PullRequestAgent, RootCauseAgent, VerifyAgent
from sre.integrations.base import (
    SECRET_CHAT_CHANNEL,
    SECRET_CHAT_TOKEN,
    SECRET_CODE_HOST_TOKEN,
    LogCallback,
)


class ScriptedReasoning:
    """ReasoningProvider that returns canned analyses and patches.

    Attributes:
        fail_analysis: Raise from analyze() instead of answering.
        empty_patch: Return a patch with no file updates.
        patch_calls: prior_failure_logs received by each generate_patch().
    """

    def __init__(self, delay: float = 0.0, fail_analysis: bool = False, empty_patch: bool = False) -> None:
        self.delay = delay
        self.fail_analysis = fail_analysis
        self.empty_patch = empty_patch
        self.patch_calls: list[list[str] | None] = []

    async def analyze(self, incident: Incident) -> RootCauseResult:
        await asyncio.sleep(self.delay)
        if self.fail_analysis:
            raise IntegrationError("reasoning", "model unavailable")
        return RootCauseResult(
            analysis=f"Unchecked None dereference while handling: {incident.title}",
            hints={"suspect_files": ["app/handlers.py"]},
            confidence=0.8,
        )

    async def generate_patch(
        self,
        incident: Incident,
        rca: RootCauseResult,
        prior_failure_logs: list[str] | None = None,
    ) -> PatchResult:
        await asyncio.sleep(self.delay)
        self.patch_calls.append(prior_failure_logs)
        if self.empty_patch:
            return PatchResult(explanation="Could not produce a fix.")
        revision = len(self.patch_calls)
        return PatchResult(
            file_updates=[
                FileUpdate(
                    path="app/handlers.py",
                    content=f"# revision {revision}\ndef handle(user):\n    if user is None:\n        return None\n    return user.name\n",
                )
            ],
            explanation=f"Guard against a missing user (revision {revision}).",
        )


class ScriptedVerifier:
    """Verifier that fails the first ``failures`` calls, then passes."""

    def __init__(self, failures: int = 0, delay: float = 0.0) -> None:
        self.failures = failures
        self.delay = delay
        self.calls: list[str] = []

    async def verify(
        self,
        repository: str,
        env: dict[str, str],
        credentials: str,
        branch: str,
        on_log: LogCallback | None = None,
    ) -> VerificationResult:
        self.calls.append(branch)
        attempt = len(self.calls)
        lines = [f"$ cloning {repository}@{branch}", "$ npm test"]
        for line in lines:
            if on_log:
                on_log(line)
            await asyncio.sleep(self.delay)

        if attempt <= self.failures:
            failure = f"FAIL app/handlers.test.js: expected 'anonymous', got undefined (run {attempt})"
            if on_log:
                on_log(failure)
            return VerificationResult(success=False, logs=lines + [failure])
        if on_log:
            on_log("All tests passed.")
        return VerificationResult(success=True, logs=lines + ["All tests passed."])


class FakeCodeHost:
    """CodeHostClient that records branches, commits and pull requests in memory."""

    def __init__(self) -> None:
        self.branches: list[str] = []
        self.commits: list[tuple[str, list[str]]] = []
        self.pull_requests: list[dict] = []

    async def create_branch(self, owner: str, repo: str, base: str, branch: str) -> None:
        if branch not in self.branches:
            self.branches.append(branch)

    async def commit_files(
        self, owner: str, repo: str, branch: str, files: list[FileUpdate], message: str
    ) -> None:
        self.commits.append((branch, [f.path for f in files]))

    async def create_pull_request(
        self, owner: str, repo: str, title: str, body: str, head: str, base: str
    ) -> str:
        number = len(self.pull_requests) + 1
        self.pull_requests.append({"title": title, "body": body, "head": head, "base": base})
        return f"https://github.com/{owner}/{repo}/pull/{number}"


class RecordingNotifier:
    """ChatNotifier that keeps every message it was asked to send."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.requests: list[str] = []
        self.replies: list[tuple[str, str]] = []
        self.posts: list[str] = []

    async def send_decision_request(self, incident: Incident) -> str:
        if self.fail:
            raise IntegrationError("slack", "channel_not_found")
        self.requests.append(incident.id)
        return f"C123:{len(self.requests)}.000"

    async def reply_in_thread(self, message_ref: str, text: str) -> None:
        self.replies.append((message_ref, text))

    async def post(self, text: str) -> None:
        self.posts.append(text)


class DictSecretStore:
    """SecretStore backed by a plain dict keyed by (project_id, kind)."""

    def __init__(self, secrets: dict[tuple[str | None, str], str] | None = None) -> None:
        self.secrets = secrets if secrets is not None else {}

    def get(self, project_id: str | None, kind: str) -> str | None:
        return self.secrets.get((project_id, kind)) or self.secrets.get((None, kind))


def demo_secrets() -> DictSecretStore:
    return DictSecretStore({
        (None, SECRET_CODE_HOST_TOKEN): "ghp_demo",
        (None, SECRET_CHAT_TOKEN): "xoxb-demo",
        (None, SECRET_CHAT_CHANNEL): "C123",
    })


def register_stub_steps(
    runtime,
    reasoning: ScriptedReasoning | None = None,
    verifier: ScriptedVerifier | None = None,
    code_host: FakeCodeHost | None = None,
    secrets: DictSecretStore | None = None,
) -> FakeCodeHost:
    """Register the four real step executors on top of scripted collaborators.

    Returns:
        The code host, so callers can inspect branches and pull requests.
    """
    reasoning = reasoning or ScriptedReasoning()
    verifier = verifier or ScriptedVerifier()
    code_host = code_host or FakeCodeHost()
    secrets = secrets or demo_secrets()

    runtime.register(RootCauseAgent(reasoning))
    runtime.register(PatchAgent(reasoning))
    runtime.register(VerifyAgent(verifier, lambda token: code_host, secrets))
    runtime.register(PullRequestAgent(lambda token: code_host, secrets))
    return code_host


def make_candidate(
    message: str = "TypeError: Cannot read properties of undefined (reading 'name') at handlers.js:42",
    error_source: str | None = ERROR_SOURCE_CI,
    project_id: str = "demo",
    owner: str | None = "acme",
    repo: str | None = "shop-api",
) -> IncidentCandidate:
    """Build a candidate for the demo repository.

    "ci-cd" candidates come from GitHub and take the auto-fix path; any
    other error_source looks like a production log and waits for approval.
    """
    ci = error_source == ERROR_SOURCE_CI
    return IncidentCandidate(
        title=("Build Failed: " if ci else "Production Error: ") + message[:80],
        message=message,
        project_id=project_id,
        source=IncidentSource.GITHUB if ci else IncidentSource.LOG_INGESTION,
        metadata=IncidentMetadata(owner=owner, repo=repo, error_source=error_source),
    )
