"""CI webhook parsing — GitHub Actions and Jenkins build failures.

Responsible for two things:
1. Validating the HMAC signature GitHub attaches to webhook deliveries
2. Turning a failed build notification into an IncidentCandidate

Every candidate built here carries error_source "ci-cd", so the runtime
fixes it autonomously: verify with retries, then open a pull request. No
human approval is requested for a broken build.

Successful or in-progress builds parse to None and are acknowledged
without creating an incident.

GitHub reference: https://docs.github.com/en/webhooks/webhook-events-and-payloads#workflow_run
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field

from schemas.incident import (
    ERROR_SOURCE_CI,
    IncidentCandidate,
    IncidentMetadata,
    IncidentSource,
    Severity,
)

logger = logging.getLogger(__name__)

CONSOLE_LOG_LENGTH = 2000


# ── Payload schema ────────────────────────────────────────────────────────────

@dataclass
class BuildFailure:
    """The fields the engine needs from a failed CI build.

    Attributes:
        source:   GITHUB or JENKINS.
        pipeline: Workflow or job name (e.g. "CI", "backend-build").
        owner / repo: Repository the build ran against.
        branch:   Branch that failed. Used as the base of the fix branch.
        commit:   Head commit of the failed build.
        run_ref:  Run id (GitHub) or build number (Jenkins).
        url:      Link to the build page.
        console_log: Build output when the CI system sends it (Jenkins).
    """
    source: IncidentSource
    pipeline: str
    owner: str
    repo: str
    branch: str
    commit: str | None = None
    run_ref: str | None = None
    url: str | None = None
    console_log: str | None = None
    extra: dict = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


# ── Signature validation ──────────────────────────────────────────────────────

def verify_github_signature(body: bytes, header_signature: str, secret: str) -> bool:
    """Verify the X-Hub-Signature-256 header of a GitHub webhook delivery.

    Args:
        body:             Raw request body bytes, read before JSON parsing.
        header_signature: Header value, "sha256=<hex digest>".
        secret:           The webhook secret configured on the repository.

    Returns:
        True if the signature matches.
    """
    expected = "sha256=" + hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, header_signature or "")


# ── Parsers ───────────────────────────────────────────────────────────────────

def parse_github_workflow_run(event: str | None, raw: dict) -> BuildFailure | None:
    """Extract a failed workflow run from a GitHub webhook body.

    Only ``workflow_run`` events with action "completed" and conclusion
    "failure" count; anything else returns None.

    Raises:
        KeyError: If a failure payload is missing required fields. The
            webhook handler returns HTTP 400.
    """
    if event != "workflow_run":
        return None
    run = raw.get("workflow_run") or {}
    if raw.get("action") != "completed" or run.get("conclusion") != "failure":
        return None

    repository = raw["repository"]
    return BuildFailure(
        source=IncidentSource.GITHUB,
        pipeline=run["name"],
        owner=repository["owner"]["login"],
        repo=repository["name"],
        branch=run.get("head_branch") or repository.get("default_branch") or "main",
        commit=run.get("head_sha"),
        run_ref=str(run["id"]) if run.get("id") is not None else None,
        url=run.get("html_url"),
        extra={"logs_url": run.get("logs_url")},
    )


def parse_jenkins_build(raw: dict) -> BuildFailure | None:
    """Extract a failed build from a Jenkins notification.

    Jenkins has no standard webhook format. The expected body, sent by an
    HTTP Request post-build step:

    {
        "build_status": "FAILURE",
        "job_name": "my-pipeline",
        "build_number": 42,
        "build_url": "http://jenkins/job/my-pipeline/42/",
        "git_repo": "owner/repo",
        "git_branch": "main",
        "git_commit": "abc123",
        "console_log": "... build output ..."
    }

    Raises:
        KeyError: If job_name is missing on a failure payload.
    """
    if raw.get("build_status") != "FAILURE":
        return None

    owner, _, repo = (raw.get("git_repo") or "unknown/unknown").partition("/")
    return BuildFailure(
        source=IncidentSource.JENKINS,
        pipeline=raw["job_name"],
        owner=owner,
        repo=repo or "unknown",
        branch=raw.get("git_branch") or "main",
        commit=raw.get("git_commit"),
        run_ref=str(raw["build_number"]) if raw.get("build_number") is not None else None,
        url=raw.get("build_url"),
        console_log=raw.get("console_log"),
    )


# ── Candidate builder ─────────────────────────────────────────────────────────

def build_ci_candidate(failure: BuildFailure, project_id: str | None = None) -> IncidentCandidate:
    """Build a "ci-cd" candidate for a failed build.

    Args:
        failure: Parsed build failure.
        project_id: Owning project. Defaults to the repository full name
            when the repository is not linked to a project.
    """
    project_id = project_id or failure.full_name

    if failure.source == IncidentSource.JENKINS:
        title = f"Jenkins Build Failed: {failure.pipeline} #{failure.run_ref}"
        description = (
            f'Jenkins job "{failure.pipeline}" build #{failure.run_ref} failed. '
            f"Branch: {failure.branch}"
        )
        message = (failure.console_log or "")[:CONSOLE_LOG_LENGTH] or (
            f"Jenkins job {failure.pipeline} failed on {failure.branch}"
        )
    else:
        title = f"Build Failed: {failure.pipeline}"
        description = (
            f'Workflow "{failure.pipeline}" failed on branch {failure.branch}. '
            f"Commit: {failure.commit}"
        )
        # The run id and commit stay out of the message so reruns of the
        # same broken workflow deduplicate.
        message = f"GitHub Actions workflow {failure.pipeline} failed in {failure.full_name} on {failure.branch}"

    metadata = IncidentMetadata(
        project_id=project_id,
        owner=failure.owner,
        repo=failure.repo,
        branch=failure.branch,
        error_source=ERROR_SOURCE_CI,
        log_source=failure.source.value.lower(),
        pipeline=failure.pipeline,
        commit_sha=failure.commit,
        run_ref=failure.run_ref,
        build_url=failure.url,
        **{k: v for k, v in failure.extra.items() if v is not None},
    )
    logger.info("CI failure in %s (%s): %s", failure.full_name, failure.source.value, failure.pipeline)

    return IncidentCandidate(
        title=title,
        message=message,
        description=description,
        project_id=project_id,
        source=failure.source,
        severity=Severity.CRITICAL,
        metadata=metadata,
    )
