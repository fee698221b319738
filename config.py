"""Runtime settings read from the environment.

Values come from os.environ after load_dotenv(), so a local .env file works
for development and real environment variables win in deployment.

Environment variables:
    GUARDIAN_DB_PATH               SQLite file (default: guardian.db)
    GUARDIAN_STEP_TIMEOUT_SECONDS  Per-step timeout (default: 300)
    GUARDIAN_MAX_VERIFY_ATTEMPTS   Auto-fix verification bound (default: 3)
    GUARDIAN_HYDRATE_LIMIT         Incidents loaded into the cache at startup (default: 20)
    GUARDIAN_CACHE_SIZE            Active-incident cache bound (default: 200)
    GUARDIAN_INGEST_TOKEN          Shared token required on log pushes (unset: no check)
    GUARDIAN_REASONING_MODEL       OpenRouter model for RCA and patches
    GUARDIAN_SANDBOX_URL           Sandbox runner base URL
    GUARDIAN_PROJECT_REPOS         "project=owner/repo,..." links projects to repositories
    GUARDIAN_LOG_FILE              Rotating log file path (default: guardian.log)
    GITHUB_API_URL                 GitHub REST base URL
    GITHUB_WEBHOOK_SECRET          Secret for X-Hub-Signature-256 (unset: no check)
    SLACK_SIGNING_SECRET           Secret for Slack interactivity requests (unset: no check)
    ALLOWED_ORIGINS                Comma-separated CORS origins
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from sre.integrations.github import GITHUB_API_BASE

logger = logging.getLogger(__name__)

DEFAULT_REASONING_MODEL = "anthropic/claude-sonnet-4-6"
DEFAULT_SANDBOX_URL = "http://localhost:8088"


@dataclass
class Settings:
    db_path: str = "guardian.db"
    step_timeout_seconds: float = 300.0
    max_verify_attempts: int = 3
    hydrate_limit: int = 20
    cache_size: int = 200
    ingest_token: str | None = None
    reasoning_model: str = DEFAULT_REASONING_MODEL
    sandbox_url: str = DEFAULT_SANDBOX_URL
    github_api_url: str = GITHUB_API_BASE
    github_webhook_secret: str | None = None
    slack_signing_secret: str | None = None
    project_repos: dict[str, str] = field(default_factory=dict)
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_file: str = "guardian.log"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """Build settings from the environment, loading .env first.

        Args:
            environ: Mapping to read instead of os.environ. When given,
                .env is not loaded.

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        def number(name: str, default, cast):
            raw = environ.get(name)
            if raw in (None, ""):
                return default
            try:
                return cast(raw)
            except ValueError:
                raise ValueError(f"{name} must be a number, got {raw!r}") from None

        return cls(
            db_path=environ.get("GUARDIAN_DB_PATH") or cls.db_path,
            step_timeout_seconds=number("GUARDIAN_STEP_TIMEOUT_SECONDS", cls.step_timeout_seconds, float),
            max_verify_attempts=number("GUARDIAN_MAX_VERIFY_ATTEMPTS", cls.max_verify_attempts, int),
            hydrate_limit=number("GUARDIAN_HYDRATE_LIMIT", cls.hydrate_limit, int),
            cache_size=number("GUARDIAN_CACHE_SIZE", cls.cache_size, int),
            ingest_token=environ.get("GUARDIAN_INGEST_TOKEN") or None,
            reasoning_model=environ.get("GUARDIAN_REASONING_MODEL") or DEFAULT_REASONING_MODEL,
            sandbox_url=environ.get("GUARDIAN_SANDBOX_URL") or DEFAULT_SANDBOX_URL,
            github_api_url=environ.get("GITHUB_API_URL") or GITHUB_API_BASE,
            github_webhook_secret=environ.get("GITHUB_WEBHOOK_SECRET") or None,
            slack_signing_secret=environ.get("SLACK_SIGNING_SECRET") or None,
            project_repos=parse_project_repos(environ.get("GUARDIAN_PROJECT_REPOS", "")),
            allowed_origins=[
                o.strip()
                for o in environ.get("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
                if o.strip()
            ],
            log_file=environ.get("GUARDIAN_LOG_FILE") or cls.log_file,
        )

    def repo_for_project(self, project_id: str) -> str | None:
        return self.project_repos.get(project_id)

    def project_for_repo(self, full_name: str) -> str | None:
        """Reverse lookup used by CI webhooks, which only know the repository."""
        for project_id, repo in self.project_repos.items():
            if repo.lower() == full_name.lower():
                return project_id
        return None


def parse_project_repos(raw: str) -> dict[str, str]:
    """Parse "proj-a=acme/api,proj-b=acme/web" into a dict. Bad entries are skipped."""
    repos = {}
    for entry in raw.split(","):
        project_id, sep, repo = entry.strip().partition("=")
        if not sep or not project_id.strip() or "/" not in repo:
            if entry.strip():
                logger.warning("Ignoring malformed GUARDIAN_PROJECT_REPOS entry: %r", entry)
            continue
        repos[project_id.strip()] = repo.strip()
    return repos
