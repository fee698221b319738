"""Helpers shared by the Verify and PR steps.

Both steps need the fix branch: Verify pushes the patch to it so the sandbox
tests the patched code, and PR opens the pull request from it.
"""

from typing import Callable

from schemas.incident import Incident
from schemas.result import PatchResult
from sre.integrations.base import SECRET_CODE_HOST_TOKEN, CodeHostClient, SecretStore

CodeHostFactory = Callable[[str], CodeHostClient]

FIX_BRANCH_PREFIX = "guardian/fix-"


def fix_branch_name(incident: Incident) -> str:
    return f"{FIX_BRANCH_PREFIX}{incident.id[:8]}"


def resolve_credentials(secrets: SecretStore, incident: Incident) -> str | None:
    """Look up the code-host token the incident's credentials_ref points at."""
    meta = incident.metadata
    return secrets.get(meta.project_id, meta.credentials_ref or SECRET_CODE_HOST_TOKEN)


async def push_patch(code_host: CodeHostClient, incident: Incident, patch: PatchResult) -> str:
    """Create the fix branch (if needed) and commit the patch's files to it.

    Returns:
        The fix branch name.
    """
    meta = incident.metadata
    branch = fix_branch_name(incident)
    await code_host.create_branch(meta.owner, meta.repo, meta.branch, branch)
    await code_host.commit_files(
        meta.owner,
        meta.repo,
        branch,
        patch.file_updates,
        message=f"fix: {incident.title[:72]} (attempt {patch.attempt})",
    )
    return branch
