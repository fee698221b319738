"""Base step definition.

Defines the contract every step executor must satisfy. Steps are the units
of work the workflow runtime sequences: root-cause analysis, patch
generation, verification, and pull-request creation.

Steps are deliberately "dumb" workers:
- They do not call other steps
- They do not write to the incident store or change incident status
- They do not store state between runs
- They report failure by returning a failed StepResult, not by raising

All decisions about ordering, retries, approval, and persistence live in
the runtime (core/runtime.py).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from schemas.agent_run import AgentName
from schemas.incident import Incident
from schemas.result import PatchResult, RootCauseResult, StepResult


@dataclass
class StepInput:
    """The input passed to a step at execution time.

    Built by the runtime from the incident snapshot and the context it has
    accumulated so far in this workflow.

    This is a dataclass rather than a Pydantic model because it is an
    internal runtime object. It is never serialized, validated from external
    input, or passed across a system boundary.

    Attributes:
        incident: Snapshot of the incident, including typed metadata.
        rca: Root-cause result, or an empty RootCauseResult when RCA failed.
            Downstream steps must work with an empty analysis.
        patch: The patch to verify or ship. None before the Patch step.
        prior_failure_logs: Verification failure logs from the previous
            attempt. Set only when regenerating a patch inside the
            self-healing loop.
        attempt: Attempt number within the self-healing loop.
        on_log: Callback for streaming log lines to observers.
    """

    incident: Incident
    rca: RootCauseResult = field(default_factory=RootCauseResult)
    patch: PatchResult | None = None
    prior_failure_logs: list[str] | None = None
    attempt: int = 1
    on_log: Callable[[str], None] | None = None

    def log(self, line: str) -> None:
        if self.on_log is not None:
            self.on_log(line)


class BaseStep(ABC):
    """Abstract base class for all step executors.

    Every concrete step extends this class and implements name and run().
    The runtime only ever interacts with steps through this interface, so
    the state machine treats all four uniformly while each step keeps its
    own collaborator wiring.

    Example:
        class RootCauseStep(BaseStep):
            name = AgentName.RCA

            async def run(self, step_input: StepInput) -> StepResult:
                rca = await self.reasoning.analyze(step_input.incident)
                return StepResult(success=True, data=rca)
    """

    @property
    @abstractmethod
    def name(self) -> AgentName:
        """Which step this is. Used as the AgentRun agent_name and registry key.

        Implement by declaring a class-level attribute on the subclass:

            class PatchStep(BaseStep):
                name = AgentName.PATCH
        """
        ...

    @abstractmethod
    async def run(self, step_input: StepInput) -> StepResult:
        """Execute the step and return its result.

        Args:
            step_input: Incident snapshot plus accumulated workflow context.

        Returns:
            A StepResult. success=False signals a step failure the runtime
            maps to a state transition.

        Raises:
            Exception: Any unhandled exception is caught by StepRunner and
                converted into a failed StepResult.
        """
        ...
