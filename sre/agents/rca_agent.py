"""RCA Agent — asks the reasoning provider for a root-cause analysis."""

import logging

from agents.base import BaseStep, StepInput
from schemas.agent_run import AgentName
from schemas.result import StepResult
from sre.integrations.base import ReasoningProvider

logger = logging.getLogger(__name__)


class RootCauseAgent(BaseStep):
    """Produces a RootCauseResult for the incident.

    Failure here is recoverable: the runtime logs it and continues with an
    empty analysis. An empty analysis from the provider is therefore
    reported as a failure so the timeline shows that RCA contributed
    nothing.
    """

    name = AgentName.RCA

    def __init__(self, reasoning: ReasoningProvider) -> None:
        self.reasoning = reasoning

    async def run(self, step_input: StepInput) -> StepResult:
        incident = step_input.incident
        step_input.log(f"Analyzing root cause for '{incident.title}'...")

        rca = await self.reasoning.analyze(incident)
        if not rca.analysis.strip():
            return StepResult.failed("Reasoning provider returned an empty analysis.")

        logger.info("RCA complete for %s (confidence %.2f).", incident.id, rca.confidence)
        return StepResult(success=True, data=rca, logs=["Root cause analysis complete."])
