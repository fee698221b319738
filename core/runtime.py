"""Incident runtime — the workflow state machine.

IncidentRuntime is the single entry point for the engine. Detectors call
submit_incident() with a candidate; the runtime deduplicates it, persists a
new incident and drives it through the steps in the background, while the
HTTP layer calls approve()/reject() and reads incidents back.

Workflow for a new incident:
    1. OPEN -> RCA_IN_PROGRESS. Run RCA. A failed RCA is logged and the
       workflow continues with empty root-cause context.
    2. -> PATCH_IN_PROGRESS. Run Patch. A failed patch ends in FAILED.
    3. Branch on metadata.error_source:
       - "ci-cd": auto-fix. Verify up to max_verify_attempts times,
         regenerating the patch from the failure logs between attempts,
         then open the PR and end RESOLVED. Exhaustion ends in FAILED.
       - anything else: suspend in AWAITING_APPROVAL (see core.approval).
    4. On approval: verify once, open the PR, end RESOLVED. On rejection:
       RESOLVED without a fix.

Every transition is written to the store first, then the cache, then
broadcast. Every step invocation is recorded as an AgentRun, inserted as
WORKING before the call and completed after it.

Failures are incident-scoped. A step that raises or times out becomes a
failed StepResult in the StepRunner; anything else that escapes a workflow
task marks that incident FAILED and is logged. Nothing propagates to other
incidents or to the caller of submit_incident().
"""

import asyncio
import logging
from typing import Awaitable, Callable

from agents.base import BaseStep, StepInput
from core.approval import ApprovalGate
from core.broadcaster import EventBroadcaster
from core.cache import ActiveIncidentCache
from core.errors import IncidentNotFoundError, TerminalStateError
from core.executor import StepRunner
from core.fingerprint import compute_fingerprint
from core.registry import StepRegistry
from core.store import IncidentStore
from schemas.agent_run import AgentName, AgentRun, AgentRunStatus
from schemas.incident import (
    Incident,
    IncidentCandidate,
    IncidentStatus,
    SubmitResult,
    utcnow,
)
from schemas.result import (
    PatchResult,
    PullRequestResult,
    RootCauseResult,
    StepResult,
    VerificationResult,
)
from sre.integrations.base import NotifierFactory

logger = logging.getLogger(__name__)

MAX_VERIFY_ATTEMPTS = 3
HYDRATE_LIMIT = 20

INTERRUPTED_MESSAGE = "Interrupted by restart. Resubmit the error to retry."
APPROVED_REPLY = "Approved. Verifying the fix in the sandbox..."

# Statuses a workflow task can be in the middle of. AWAITING_APPROVAL is
# excluded: no task runs while waiting.
IN_FLIGHT_STATUSES = (
    IncidentStatus.OPEN,
    IncidentStatus.RCA_IN_PROGRESS,
    IncidentStatus.PATCH_IN_PROGRESS,
    IncidentStatus.VERIFY_IN_PROGRESS,
    IncidentStatus.PR_CREATION_IN_PROGRESS,
)


class IncidentRuntime:
    """Orchestrates incidents from submission to a terminal state.

    Construct it explicitly with its collaborators; there is no module-level
    instance. Steps are registered once, before the first submission.

    Attributes:
        store: Durable source of truth.
        broadcaster: Fan-out of incident, run and log events.
        cache: In-memory index of recent incidents for list queries.
        registry: The four step executors, keyed by AgentName.
        runner: Runs one step under a timeout.
        gate: Approval persistence, notification and claiming.
        max_verify_attempts: Bound on the auto-fix verification loop.
        hydrate_limit: How many recent incidents recover() loads.
    """

    def __init__(
        self,
        store: IncidentStore,
        broadcaster: EventBroadcaster | None = None,
        cache: ActiveIncidentCache | None = None,
        registry: StepRegistry | None = None,
        runner: StepRunner | None = None,
        notifiers: NotifierFactory | None = None,
        max_verify_attempts: int = MAX_VERIFY_ATTEMPTS,
        hydrate_limit: int = HYDRATE_LIMIT,
    ) -> None:
        if max_verify_attempts < 1:
            raise ValueError("max_verify_attempts must be at least 1")
        self.store = store
        self.broadcaster = broadcaster or EventBroadcaster()
        self.cache = cache or ActiveIncidentCache()
        self.registry = registry or StepRegistry()
        self.runner = runner or StepRunner()
        self.gate = ApprovalGate(store, notifiers)
        self.max_verify_attempts = max_verify_attempts
        self.hydrate_limit = hydrate_limit
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, step: BaseStep) -> None:
        """Register a step executor. Raises ValueError on a duplicate name."""
        self.registry.register(step)
        logger.debug("Registered step: %s", step.name.value)

    # ── Submission ────────────────────────────────────────────────────────────

    async def submit_incident(self, candidate: IncidentCandidate) -> SubmitResult:
        """Deduplicate a candidate and start a workflow for a new fault.

        Returns as soon as the incident is persisted. The workflow runs in a
        background task.

        Raises:
            RuntimeError: If not every step has an executor registered.
        """
        missing = self.registry.missing()
        if missing:
            raise RuntimeError(f"No executor registered for: {', '.join(m.value for m in missing)}")

        fingerprint = compute_fingerprint(candidate.message, candidate.project_id)
        metadata = candidate.metadata.model_copy(update={"project_id": candidate.project_id})
        now = utcnow()
        incident = Incident(
            title=candidate.title,
            description=candidate.description or candidate.message,
            source=candidate.source,
            severity=candidate.severity,
            fingerprint=fingerprint,
            status_message="Incident detected",
            last_seen=now,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )

        stored, created = await self.store.create_or_increment(incident)
        self.cache.put(stored)

        if not created:
            logger.info(
                "Duplicate of incident %s (occurrence %d).", stored.id, stored.occurrence_count
            )
            self.broadcaster.incident_updated(
                stored, f"Occurred again ({stored.occurrence_count} times)"
            )
            return SubmitResult(
                incident_id=stored.id, duplicate=True, occurrence_count=stored.occurrence_count
            )

        logger.info("Created incident %s: %s", stored.id, stored.title)
        self.broadcaster.incident_updated(stored, "Incident detected")
        self._spawn(stored.id, lambda: self.run_workflow(stored.id))
        return SubmitResult(incident_id=stored.id, duplicate=False, occurrence_count=1)

    def _spawn(
        self,
        incident_id: str,
        work: Callable[[], Awaitable[None]],
        after_running: bool = False,
    ) -> asyncio.Task | None:
        """Start a workflow task, keeping at most one live task per incident.

        Args:
            incident_id: Key of the task registry.
            work: Builds the coroutine to run.
            after_running: If a task is still live for the incident, queue
                ``work`` behind it instead of ignoring the trigger. Used on
                approval, where the suspending task may still be publishing.
        """
        existing = self._tasks.get(incident_id)
        if existing is not None and not existing.done():
            if not after_running:
                logger.warning("Workflow for incident %s already running; trigger ignored.", incident_id)
                return None
            coro = _run_after(existing, work)
        else:
            coro = work()

        task = asyncio.create_task(coro, name=f"incident-{incident_id[:8]}")
        self._tasks[incident_id] = task
        task.add_done_callback(lambda t: self._forget(incident_id, t))
        return task

    def _forget(self, incident_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(incident_id) is task:
            del self._tasks[incident_id]

    # ── Workflow ──────────────────────────────────────────────────────────────

    async def run_workflow(self, incident_id: str) -> None:
        """Drive an OPEN incident through RCA and Patch, then fix or suspend.

        Never raises except for cancellation. Unexpected errors mark the
        incident FAILED.
        """
        incident = await self.store.get(incident_id)
        if incident.status != IncidentStatus.OPEN:
            logger.warning(
                "Incident %s is %s, not OPEN; workflow not started.", incident_id, incident.status.value
            )
            return
        await self._guarded(incident_id, self._execute(incident))

    async def _guarded(self, incident_id: str, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Workflow for incident %s crashed.", incident_id)
            await self._fail(incident_id, f"Workflow error: {exc}")

    async def _execute(self, incident: Incident) -> None:
        incident = await self._transition(
            incident, IncidentStatus.RCA_IN_PROGRESS, "Analyzing root cause..."
        )
        result = await self._run_step(AgentName.RCA, StepInput(incident=incident))
        if result.success and isinstance(result.data, RootCauseResult):
            rca = result.data
            incident = await self._record(incident, "Root cause identified", rca=rca)
        else:
            logger.warning(
                "RCA failed for incident %s (%s); continuing without root cause.",
                incident.id,
                result.error,
            )
            rca = RootCauseResult()

        incident = await self._transition(
            incident, IncidentStatus.PATCH_IN_PROGRESS, "Generating code fix..."
        )
        result = await self._run_step(AgentName.PATCH, StepInput(incident=incident, rca=rca))
        if not result.success or not isinstance(result.data, PatchResult):
            await self._fail(incident.id, f"Patch generation failed: {result.error}")
            return
        patch = result.data
        incident = await self._record(incident, "Patch generated", patch=patch)

        if incident.metadata.requires_approval:
            suspended = await self.gate.suspend(incident, rca, patch)
            self._publish(suspended)
            return

        await self._auto_fix(incident, rca, patch)

    async def _auto_fix(self, incident: Incident, rca: RootCauseResult, patch: PatchResult) -> None:
        """Verify, regenerating the patch from failure logs, up to the bound."""
        failure_logs: list[str] = []

        for attempt in range(1, self.max_verify_attempts + 1):
            if attempt > 1:
                incident = await self._transition(
                    incident,
                    IncidentStatus.PATCH_IN_PROGRESS,
                    f"Verification failed. Regenerating fix (attempt {attempt}/{self.max_verify_attempts})...",
                )
                result = await self._run_step(
                    AgentName.PATCH,
                    StepInput(
                        incident=incident,
                        rca=rca,
                        patch=patch,
                        prior_failure_logs=failure_logs,
                        attempt=attempt,
                    ),
                )
                if not result.success or not isinstance(result.data, PatchResult):
                    await self._fail(
                        incident.id, f"Patch regeneration failed on attempt {attempt}: {result.error}"
                    )
                    return
                patch = result.data
                incident = await self._record(incident, "Patch regenerated", patch=patch)

            incident = await self._transition(
                incident,
                IncidentStatus.VERIFY_IN_PROGRESS,
                f"Verifying fix in sandbox (attempt {attempt}/{self.max_verify_attempts})...",
                verify_attempts=attempt,
            )
            verification = await self._verify(incident, rca, patch, attempt)
            incident = await self._record(
                incident,
                "Verification passed" if verification.success else f"Verification attempt {attempt} failed",
                verification=verification,
            )
            if verification.success:
                await self._open_pull_request(incident, rca, patch)
                return
            failure_logs = verification.logs or [f"Verification attempt {attempt} failed without output."]

        await self._fail(
            incident.id,
            f"Verification failed after {self.max_verify_attempts} attempts; retries exhausted.",
        )

    async def _verify(
        self, incident: Incident, rca: RootCauseResult, patch: PatchResult, attempt: int
    ) -> VerificationResult:
        result = await self._run_step(
            AgentName.VERIFY, StepInput(incident=incident, rca=rca, patch=patch, attempt=attempt)
        )
        if isinstance(result.data, VerificationResult):
            return result.data.model_copy(update={"success": result.success})
        return VerificationResult(
            success=result.success, logs=result.logs or [result.error or "verification failed"], attempt=attempt
        )

    async def _open_pull_request(self, incident: Incident, rca: RootCauseResult, patch: PatchResult) -> None:
        incident = await self._transition(
            incident, IncidentStatus.PR_CREATION_IN_PROGRESS, "Creating pull request..."
        )
        result = await self._run_step(
            AgentName.PR, StepInput(incident=incident, rca=rca, patch=patch)
        )
        if not result.success or not isinstance(result.data, PullRequestResult):
            await self._fail(incident.id, f"Pull request creation failed: {result.error}")
            return

        url = result.data.url
        incident = await self._transition(
            incident, IncidentStatus.RESOLVED, f"Pull request created: {url}", pr_url=url
        )
        logger.info("Incident %s resolved with %s", incident.id, url)
        await self.gate.reply(incident, f"Pull request opened for *{incident.title}*: {url}")

    async def _resume_approved(self, incident: Incident) -> None:
        """Verify once and open the PR for an approved incident."""
        rca = incident.metadata.rca or RootCauseResult()
        patch = incident.metadata.patch
        if patch is None:
            await self._fail(incident.id, "No patch data found to verify.")
            return

        await self.gate.reply(incident, APPROVED_REPLY)
        attempt = incident.metadata.verify_attempts + 1
        incident = await self._record(
            incident, "Verifying approved fix in sandbox...", verify_attempts=attempt
        )
        verification = await self._verify(incident, rca, patch, attempt)
        incident = await self._record(
            incident,
            "Verification passed" if verification.success else "Verification failed",
            verification=verification,
        )
        if not verification.success:
            await self._fail(incident.id, "Verification of the approved fix failed.")
            return
        await self._open_pull_request(incident, rca, patch)

    # ── Steps and transitions ─────────────────────────────────────────────────

    async def _run_step(self, name: AgentName, step_input: StepInput) -> StepResult:
        """Run one step, recording its WORKING and terminal AgentRun."""
        incident = step_input.incident
        project_id = incident.project_id
        step_input.on_log = lambda line: self.broadcaster.log_line(
            line, project_id=project_id, incident_id=incident.id, source=name.value
        )

        run = await self.store.add_run(
            AgentRun(
                incident_id=incident.id,
                agent_name=name,
                status=AgentRunStatus.WORKING,
                thoughts=f"{name.value} started (attempt {step_input.attempt}).",
                attempt=step_input.attempt,
            )
        )
        self.broadcaster.agent_run(run, project_id)

        result, elapsed_ms = await self.runner.run(self.registry.get(name), step_input)

        thoughts = result.error if not result.success and result.error else "\n".join(result.logs)
        output = result.data.model_dump(mode="json") if result.data is not None else {}
        run = await self.store.complete_run(run.complete(result.success, thoughts, output))
        self.broadcaster.agent_run(run, project_id)
        logger.info(
            "Step %s for incident %s %s in %.0fms.",
            name.value,
            incident.id,
            "completed" if result.success else "failed",
            elapsed_ms,
        )
        return result

    async def _transition(
        self, incident: Incident, status: IncidentStatus, message: str, **metadata
    ) -> Incident:
        """Persist a status change (plus metadata fields), then cache and broadcast."""
        updated = incident.model_copy(
            update={
                "status": status,
                "status_message": message,
                "metadata": incident.metadata.model_copy(update=metadata),
            }
        )
        saved = await self.store.update(updated)
        logger.info("Incident %s -> %s: %s", saved.id, status.value, message)
        self._publish(saved)
        return saved

    async def _record(self, incident: Incident, message: str, **metadata) -> Incident:
        """Persist metadata without changing the status."""
        return await self._transition(incident, incident.status, message, **metadata)

    async def _fail(self, incident_id: str, message: str) -> None:
        """Mark an incident FAILED unless it already reached a terminal status."""
        try:
            incident = await self.store.get(incident_id)
            if incident.status.is_terminal:
                return
            incident = await self._transition(incident, IncidentStatus.FAILED, message)
        except (IncidentNotFoundError, TerminalStateError) as exc:
            logger.warning("Could not mark incident %s failed: %s", incident_id, exc)
            return
        logger.error("Incident %s failed: %s", incident_id, message)
        await self.gate.reply(incident, f"Automated fix failed: {message}")

    def _publish(self, incident: Incident) -> None:
        self.cache.put(incident)
        self.broadcaster.incident_updated(incident, incident.status_message)

    # ── Decisions ─────────────────────────────────────────────────────────────

    async def approve(self, incident_id: str, approved_by: str | None = None) -> bool:
        """Approve a suspended fix and resume the workflow in the background.

        Idempotent: only the first call for an AWAITING_APPROVAL incident
        has any effect.

        Returns:
            True if this call claimed the decision, False if the incident
            was not awaiting approval.

        Raises:
            IncidentNotFoundError: If the incident does not exist.
        """
        claimed = await self.gate.claim_approval(incident_id, approved_by)
        if claimed is None:
            current = await self.store.get(incident_id)
            logger.info(
                "Approve ignored for incident %s in status %s.", incident_id, current.status.value
            )
            return False

        logger.info("Incident %s approved by %s.", incident_id, approved_by or "unknown")
        self._publish(claimed)
        self._spawn(
            incident_id,
            lambda: self._guarded(incident_id, self._resume_approved(claimed)),
            after_running=True,
        )
        return True

    async def reject(
        self, incident_id: str, rejected_by: str | None = None, reason: str | None = None
    ) -> bool:
        """Reject a suspended fix. The incident ends RESOLVED without a PR.

        Returns:
            True if this call claimed the decision, False otherwise.

        Raises:
            IncidentNotFoundError: If the incident does not exist.
        """
        claimed = await self.gate.claim_rejection(incident_id, rejected_by, reason)
        if claimed is None:
            current = await self.store.get(incident_id)
            logger.info(
                "Reject ignored for incident %s in status %s.", incident_id, current.status.value
            )
            return False

        logger.info("Incident %s rejected by %s.", incident_id, rejected_by or "unknown")
        self._publish(claimed)
        text = "Fix rejected. No changes will be made."
        if reason:
            text += f" Reason: {reason}"
        await self.gate.reply(claimed, text)
        return True

    # ── Queries ───────────────────────────────────────────────────────────────

    def list_active_incidents(
        self, project_id: str | None = None, status: IncidentStatus | None = None
    ) -> list[Incident]:
        """Return cached incidents, newest first. Never touches the store."""
        return self.cache.list_active(project_id=project_id, status=status)

    async def get_incident(self, incident_id: str) -> Incident:
        """Return the stored incident. Raises IncidentNotFoundError."""
        return await self.store.get(incident_id)

    async def get_timeline(self, incident_id: str) -> tuple[Incident, list[AgentRun]]:
        """Return an incident with its agent runs in recorded order."""
        incident = await self.store.get(incident_id)
        return incident, await self.store.list_runs(incident_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def recover(self) -> None:
        """Rebuild the cache and close out workflows lost to a restart.

        Incidents left in a working status had their task die with the
        previous process. They are marked FAILED rather than resumed, since
        a half-applied step cannot be replayed safely. AWAITING_APPROVAL
        incidents hold no task and stay decidable.
        """
        recent = await self.store.list_recent(self.hydrate_limit)
        awaiting = await self.store.list_in_status([IncidentStatus.AWAITING_APPROVAL])
        self.cache.hydrate(recent + awaiting)

        interrupted = 0
        for incident in await self.store.list_in_status(IN_FLIGHT_STATUSES):
            if incident.id in self._tasks:
                continue
            await self._fail(incident.id, INTERRUPTED_MESSAGE)
            interrupted += 1

        logger.info(
            "Recovered %d incidents (%d awaiting approval, %d interrupted).",
            len(self.cache),
            len(awaiting),
            interrupted,
        )

    async def wait_idle(self) -> None:
        """Wait until every running workflow task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight workflow tasks and wait for them to stop."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Runtime stopped (%d workflow tasks cancelled).", len(tasks))


async def _run_after(previous: asyncio.Task, work: Callable[[], Awaitable[None]]) -> None:
    await asyncio.gather(previous, return_exceptions=True)
    await work()
