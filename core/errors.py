"""Exception hierarchy for the orchestration engine.

Only conditions a caller can act on get their own type. Step failures are
not exceptions at the runtime boundary: steps return failed StepResults and
the runtime turns them into state transitions.
"""


class GuardianError(Exception):
    """Base class for all engine errors."""


class IncidentNotFoundError(GuardianError):
    """Raised when an operation names an incident id the store does not know."""

    def __init__(self, incident_id: str):
        super().__init__(f"Incident '{incident_id}' not found.")
        self.incident_id = incident_id


class TerminalStateError(GuardianError):
    """Raised when a write would change the status of a RESOLVED or FAILED incident."""

    def __init__(self, incident_id: str, status: str):
        super().__init__(f"Incident '{incident_id}' is terminal ({status}) and cannot change status.")
        self.incident_id = incident_id
        self.status = status


class IntegrationError(GuardianError):
    """Raised by collaborator adapters when the remote service fails.

    Includes the service name so step logs say which dependency broke.
    """

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
