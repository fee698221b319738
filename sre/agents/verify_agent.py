"""Verify Agent — pushes the patch to the fix branch and runs it in the sandbox."""

import logging

from agents.base import BaseStep, StepInput
from core.errors import IntegrationError
from schemas.agent_run import AgentName
from schemas.result import StepResult, VerificationResult
from sre.agents.common import CodeHostFactory, push_patch, resolve_credentials
from sre.integrations.base import SecretStore, Verifier

logger = logging.getLogger(__name__)


class VerifyAgent(BaseStep):
    """Verifies the current patch in an isolated build.

    The result always carries a VerificationResult, including on failure,
    so the self-healing loop can feed the sandbox logs into the next patch
    attempt.

    Fails fast without calling the sandbox when the incident has no
    repository linkage or no patch: there is nothing to build.
    """

    name = AgentName.VERIFY

    def __init__(self, verifier: Verifier, code_host: CodeHostFactory, secrets: SecretStore) -> None:
        self.verifier = verifier
        self.code_host = code_host
        self.secrets = secrets

    async def run(self, step_input: StepInput) -> StepResult:
        incident = step_input.incident
        meta = incident.metadata

        if not meta.owner or not meta.repo:
            message = "Missing owner/repo in incident metadata. Cannot verify without a repository."
            step_input.log(message)
            return StepResult.failed(
                message,
                logs=[message],
                data=VerificationResult(success=False, logs=[message], attempt=step_input.attempt),
            )
        if step_input.patch is None:
            return StepResult.failed("No patch to verify.")

        credentials = resolve_credentials(self.secrets, incident)
        if not credentials:
            message = "No code-host credentials configured; cannot push the fix branch."
            step_input.log(message)
            return StepResult.failed(message, logs=[message])

        try:
            branch = await push_patch(self.code_host(credentials), incident, step_input.patch)
        except IntegrationError as exc:
            logger.error("Could not push fix branch for %s: %s", incident.id, exc)
            return StepResult.failed(str(exc), logs=[str(exc)])

        repository = f"https://github.com/{meta.owner}/{meta.repo}"
        step_input.log(f"Verifying {meta.owner}/{meta.repo}@{branch} (attempt {step_input.attempt})...")

        result = await self.verifier.verify(repository, meta.env, credentials, branch, step_input.on_log)
        result = result.model_copy(update={"attempt": step_input.attempt, "branch": branch})

        if not result.success:
            return StepResult.failed(
                f"Verification attempt {step_input.attempt} failed.",
                logs=result.logs,
                data=result,
            )
        return StepResult(success=True, data=result, logs=result.logs)
