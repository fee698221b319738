"""Approval gate — suspends production fixes until a human decides.

A workflow that reaches the gate is persisted in AWAITING_APPROVAL with
everything needed to resume (root cause, patch) in its metadata, and the
workflow task ends. Nothing is held in memory while waiting, so a decision
can arrive minutes or days later, or after a restart.

Decisions are claimed with a compare-and-set on the incident status. Of any
number of concurrent approve/reject calls exactly one moves the incident
out of AWAITING_APPROVAL; the rest see None and do nothing.

Chat is a side channel. A missing or failing notifier is logged and the
incident still waits for a decision through the HTTP API.
"""

import logging

from core.store import IncidentStore
from schemas.incident import Incident, IncidentStatus
from schemas.result import PatchResult, RootCauseResult
from sre.integrations.base import ChatNotifier, NotifierFactory

logger = logging.getLogger(__name__)

AWAITING_MESSAGE = "Fix ready. Awaiting human approval..."
APPROVED_MESSAGE = "Approval received. Verifying fix..."
REJECTED_MESSAGE = "Fix rejected. Incident closed as won't fix."


class ApprovalGate:
    """Persists, notifies and claims approval decisions.

    The gate writes only to the store. The runtime that calls it is
    responsible for refreshing the cache and broadcasting the returned
    snapshots.

    Attributes:
        store: Source of truth for the suspended incident.
        notifiers: Builds the chat notifier for a project, or returns None
            when the project has no chat configured.
    """

    def __init__(self, store: IncidentStore, notifiers: NotifierFactory | None = None) -> None:
        self.store = store
        self.notifiers = notifiers

    def notifier_for(self, incident: Incident) -> ChatNotifier | None:
        if self.notifiers is None:
            return None
        return self.notifiers(incident.project_id)

    async def suspend(self, incident: Incident, rca: RootCauseResult, patch: PatchResult) -> Incident:
        """Move an incident into AWAITING_APPROVAL and ask for a decision.

        Args:
            incident: Latest snapshot, currently PATCH_IN_PROGRESS.
            rca: Root cause to keep for the resumed workflow.
            patch: The patch a human is asked to approve.

        Returns:
            The stored snapshot, including the chat message reference when
            a decision request was sent.
        """
        metadata = incident.metadata.model_copy(
            update={"rca": rca, "patch": patch, "awaiting_approval": True}
        )
        saved = await self.store.update(
            incident.model_copy(
                update={
                    "status": IncidentStatus.AWAITING_APPROVAL,
                    "status_message": AWAITING_MESSAGE,
                    "metadata": metadata,
                }
            )
        )
        logger.info("Incident %s awaiting approval.", saved.id)

        notifier = self.notifier_for(saved)
        if notifier is None:
            logger.warning(
                "No chat notifier configured for project %s; incident %s waits for an API decision.",
                saved.project_id,
                saved.id,
            )
            return saved

        try:
            message_ref = await notifier.send_decision_request(saved)
        except Exception as exc:
            # Any notifier failure leaves the incident waiting for an API decision.
            logger.error("Could not send approval request for %s: %r", saved.id, exc)
            return saved

        # A decision may already have been claimed; then the reference is
        # simply not recorded.
        updated = await self.store.transition(
            saved.id,
            IncidentStatus.AWAITING_APPROVAL,
            IncidentStatus.AWAITING_APPROVAL,
            status_message=AWAITING_MESSAGE,
            metadata_updates={"chat_message_ref": message_ref},
        )
        return updated or saved

    async def claim_approval(self, incident_id: str, approved_by: str | None = None) -> Incident | None:
        """Claim an approval. Returns the resumed snapshot, or None if not awaiting."""
        return await self.store.transition(
            incident_id,
            IncidentStatus.AWAITING_APPROVAL,
            IncidentStatus.VERIFY_IN_PROGRESS,
            status_message=APPROVED_MESSAGE,
            metadata_updates={"awaiting_approval": False, "approved_by": approved_by},
        )

    async def claim_rejection(
        self,
        incident_id: str,
        rejected_by: str | None = None,
        reason: str | None = None,
    ) -> Incident | None:
        """Claim a rejection. The incident ends RESOLVED without a fix."""
        return await self.store.transition(
            incident_id,
            IncidentStatus.AWAITING_APPROVAL,
            IncidentStatus.RESOLVED,
            status_message=REJECTED_MESSAGE,
            metadata_updates={
                "awaiting_approval": False,
                "rejected_by": rejected_by,
                "rejection_reason": reason,
            },
        )

    async def reply(self, incident: Incident, text: str) -> None:
        """Send a follow-up to the decision thread, or to the channel.

        Never raises: chat delivery failures are logged.
        """
        notifier = self.notifier_for(incident)
        if notifier is None:
            return
        try:
            if incident.metadata.chat_message_ref:
                await notifier.reply_in_thread(incident.metadata.chat_message_ref, text)
            else:
                await notifier.post(text)
        except Exception as exc:
            logger.error("Chat follow-up for incident %s failed: %r", incident.id, exc)
