"""Step registry.

StepRegistry is the runtime's roster of step executors, keyed by AgentName.
The runtime looks steps up by name when it sequences a workflow, so a
deployment (or a test) swaps one step's implementation by registering a
different executor under the same name.

The registry enforces one invariant: one executor per step name. Two
executors for the same step would make the audit trail ambiguous, so
duplicate registration is rejected immediately.
"""

from agents.base import BaseStep
from schemas.agent_run import AgentName


class StepRegistry:
    """Tracks registered step executors and provides lookup by name.

    Attributes:
        _steps: Internal dict mapping AgentName to step instance.
    """

    def __init__(self) -> None:
        """Initialise an empty registry."""
        self._steps: dict[AgentName, BaseStep] = {}

    def register(self, step: BaseStep) -> None:
        """Register a step executor.

        Args:
            step: The executor to register. Its name property is used as
                the unique key.

        Raises:
            ValueError: If an executor for the same step is already
                registered. This is always a programming error, not a
                recoverable condition.
        """
        if step.name in self._steps:
            raise ValueError(
                f"Step '{step.name.value}' is already registered. "
                "Each step must have exactly one executor."
            )
        self._steps[step.name] = step

    def get(self, name: AgentName) -> BaseStep:
        """Return the executor for a step.

        Raises:
            KeyError: If no executor is registered for ``name``. The runtime
                checks completeness at construction, so this only happens on
                a misconfigured registry.
        """
        try:
            return self._steps[name]
        except KeyError:
            raise KeyError(f"No executor registered for step '{name.value}'.") from None

    def missing(self) -> list[AgentName]:
        """Return the step names that have no executor yet."""
        return [name for name in AgentName if name not in self._steps]

    def get_all(self) -> list[BaseStep]:
        return list(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)
