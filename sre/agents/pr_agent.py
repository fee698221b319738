"""PR Agent — opens the pull request for a verified fix."""

import logging

from agents.base import BaseStep, StepInput
from core.errors import IntegrationError
from schemas.agent_run import AgentName
from schemas.result import PullRequestResult, StepResult
from sre.agents.common import CodeHostFactory, fix_branch_name, push_patch, resolve_credentials
from sre.integrations.base import SecretStore

logger = logging.getLogger(__name__)


class PullRequestAgent(BaseStep):
    """Opens a pull request from the fix branch into the incident's base branch.

    The Verify step normally pushed the branch already. If the incident has
    no successful verification of that branch on record, the patch is
    pushed here first.
    """

    name = AgentName.PR

    def __init__(self, code_host: CodeHostFactory, secrets: SecretStore) -> None:
        self.code_host = code_host
        self.secrets = secrets

    async def run(self, step_input: StepInput) -> StepResult:
        incident = step_input.incident
        meta = incident.metadata

        if not meta.owner or not meta.repo:
            return StepResult.failed("Missing owner/repo in incident metadata; cannot open a pull request.")
        if step_input.patch is None:
            return StepResult.failed("No patch to open a pull request for.")

        credentials = resolve_credentials(self.secrets, incident)
        if not credentials:
            return StepResult.failed("No code-host credentials configured.")

        client = self.code_host(credentials)
        branch = fix_branch_name(incident)
        verified = meta.verification
        try:
            if verified is None or not verified.success or verified.branch != branch:
                branch = await push_patch(client, incident, step_input.patch)

            url = await client.create_pull_request(
                meta.owner,
                meta.repo,
                title=f"fix: {incident.title[:100]}",
                body=_pull_request_body(step_input),
                head=branch,
                base=meta.branch,
            )
        except IntegrationError as exc:
            logger.error("Pull request creation failed for %s: %s", incident.id, exc)
            return StepResult.failed(str(exc), logs=[str(exc)])

        step_input.log(f"Pull request opened: {url}")
        return StepResult(success=True, data=PullRequestResult(url=url, branch=branch), logs=[url])


def _pull_request_body(step_input: StepInput) -> str:
    incident = step_input.incident
    patch = step_input.patch
    parts = [
        f"Automated fix for incident `{incident.id}`.",
        f"**{incident.title}**",
        f"Occurrences: {incident.occurrence_count}",
        "### Root cause",
        step_input.rca.analysis or "_Root-cause analysis unavailable._",
        "### Fix",
        patch.explanation or "_No explanation provided._",
        "### Files",
        "\n".join(f"- `{path}`" for path in patch.files),
    ]
    if patch.attempt > 1:
        parts.append(f"_Patch regenerated {patch.attempt - 1} time(s) after failed verification._")
    return "\n\n".join(parts)
