"""GitHub code-hosting client.

Implements the three operations the PR step needs (create a branch, commit
full-file updates to it, open a pull request) against the GitHub REST API
v3 with httpx.

GitHub API reference: https://docs.github.com/en/rest
"""

import base64
import logging

import httpx

from core.errors import IntegrationError
from schemas.result import FileUpdate

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 15


class GitHubClient:
    """CodeHostClient implementation backed by the GitHub REST API.

    Attributes:
        base_url: API root. Override for GitHub Enterprise.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        token: str,
        base_url: str = GITHUB_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the client.

        Args:
            token: Personal access or installation token with contents and
                pull-request write scope.
            base_url: API root URL.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport. Tests pass MockTransport.
        """
        self.base_url = base_url
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def create_branch(self, owner: str, repo: str, base: str, branch: str) -> None:
        """Create ``branch`` pointing at the head of ``base``.

        An already-existing branch is not an error: a regenerated patch is
        committed on top of the same fix branch.
        """
        try:
            async with self._client() as client:
                ref = await client.get(f"/repos/{owner}/{repo}/git/ref/heads/{base}")
                ref.raise_for_status()
                sha = ref.json()["object"]["sha"]

                created = await client.post(
                    f"/repos/{owner}/{repo}/git/refs",
                    json={"ref": f"refs/heads/{branch}", "sha": sha},
                )
                if created.status_code == 422 and "already exists" in created.text:
                    logger.info("Branch %s already exists in %s/%s.", branch, owner, repo)
                    return
                created.raise_for_status()
        except httpx.HTTPError as exc:
            raise IntegrationError("github", f"create branch {branch} failed: {exc}") from exc

        logger.info("Created branch %s from %s in %s/%s.", branch, base, owner, repo)

    async def commit_files(
        self,
        owner: str,
        repo: str,
        branch: str,
        files: list[FileUpdate],
        message: str,
    ) -> None:
        """Write each file's full content to ``branch``, one commit per file."""
        try:
            async with self._client() as client:
                for update in files:
                    path = f"/repos/{owner}/{repo}/contents/{update.path.lstrip('/')}"
                    existing = await client.get(path, params={"ref": branch})
                    body = {
                        "message": message,
                        "content": base64.b64encode(update.content.encode("utf-8")).decode("ascii"),
                        "branch": branch,
                    }
                    if existing.status_code == 200:
                        body["sha"] = existing.json()["sha"]
                    elif existing.status_code != 404:
                        existing.raise_for_status()

                    written = await client.put(path, json=body)
                    written.raise_for_status()
                    logger.debug("Committed %s to %s/%s@%s.", update.path, owner, repo, branch)
        except httpx.HTTPError as exc:
            raise IntegrationError("github", f"commit to {branch} failed: {exc}") from exc

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> str:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"/repos/{owner}/{repo}/pulls",
                    json={"title": title, "body": body, "head": head, "base": base},
                )
                resp.raise_for_status()
                url = resp.json()["html_url"]
        except httpx.HTTPError as exc:
            raise IntegrationError("github", f"create pull request failed: {exc}") from exc

        logger.info("Opened pull request %s.", url)
        return url
