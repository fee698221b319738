"""Step runner.

StepRunner executes one step with a timeout and an exception boundary, so
the runtime only ever sees a StepResult. It also owns timing: how long each
step took is measured here, not inside the steps.

The key guarantee: a step that hangs or raises becomes a failed StepResult
for its incident. It never propagates into the workflow task and never
affects other incidents.
"""

import asyncio
import logging
import time

from agents.base import BaseStep, StepInput
from schemas.result import StepResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300


class StepRunner:
    """Runs a single step under a timeout.

    Collaborator calls (reasoning provider, sandbox, code host) carry no
    timeout guarantee of their own; this is the one place a deadline is
    enforced.

    Attributes:
        timeout_seconds: Maximum time to wait for one step before cancelling
            it and reporting a failure. Defaults to 300.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        """Initialise the runner.

        Args:
            timeout_seconds: Per-step timeout. Steps that exceed this are
                cancelled and reported as failed.
        """
        self.timeout_seconds = timeout_seconds

    async def run(self, step: BaseStep, step_input: StepInput) -> tuple[StepResult, float]:
        """Run a step and return its result with the elapsed time.

        This method never raises, except for cancellation of the calling
        task, which is propagated so workflow shutdown works.

        Args:
            step: The executor to run.
            step_input: Incident snapshot and accumulated context.

        Returns:
            (result, elapsed_ms). Timeouts and exceptions produce a failed
            StepResult whose error names the cause.
        """
        start = time.perf_counter()
        incident_id = step_input.incident.id

        try:
            result = await asyncio.wait_for(step.run(step_input), timeout=self.timeout_seconds)

        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "Step '%s' for incident %s timed out after %.1fs (limit: %ss).",
                step.name.value,
                incident_id,
                elapsed_ms / 1000,
                self.timeout_seconds,
            )
            return StepResult.failed(f"Timed out after {self.timeout_seconds}s."), elapsed_ms

        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "Step '%s' for incident %s raised after %.0fms: %s",
                step.name.value,
                incident_id,
                elapsed_ms,
                exc,
            )
            return StepResult.failed(f"{type(exc).__name__}: {exc}"), elapsed_ms

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug("Step '%s' for incident %s finished in %.0fms.", step.name.value, incident_id, elapsed_ms)
        return result, elapsed_ms
