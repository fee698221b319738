"""Patch Agent — generates a code fix, optionally informed by failed verification."""

import logging

from agents.base import BaseStep, StepInput
from schemas.agent_run import AgentName
from schemas.result import StepResult
from sre.integrations.base import ReasoningProvider

logger = logging.getLogger(__name__)


class PatchAgent(BaseStep):
    """Produces a PatchResult with full-file updates.

    Works with an empty RCA (the provider infers the cause from the incident
    itself). A patch with no file updates is a failure: there is nothing to
    verify or ship.
    """

    name = AgentName.PATCH

    def __init__(self, reasoning: ReasoningProvider) -> None:
        self.reasoning = reasoning

    async def run(self, step_input: StepInput) -> StepResult:
        incident = step_input.incident
        retrying = step_input.prior_failure_logs is not None or step_input.attempt > 1
        step_input.log(
            f"Regenerating fix (attempt {step_input.attempt}) from verification failure..."
            if retrying else "Generating fix..."
        )

        patch = await self.reasoning.generate_patch(
            incident,
            step_input.rca,
            (step_input.prior_failure_logs or []) if retrying else None,
        )
        patch = patch.model_copy(update={"attempt": step_input.attempt})

        if not patch.file_updates:
            logger.warning("Patch for %s contained no file updates.", incident.id)
            return StepResult.failed(
                "Reasoning provider returned no file updates.",
                logs=[patch.explanation] if patch.explanation else [],
            )

        logger.info(
            "Patch attempt %d for %s touches %d file(s): %s",
            step_input.attempt, incident.id, len(patch.file_updates), ", ".join(patch.files),
        )
        return StepResult(success=True, data=patch, logs=[f"Updated {f}" for f in patch.files])
