"""Active-incident cache.

In-memory index of recently active incidents, keyed by id, that serves
"list active incidents" without a store round trip. It is a cache, not a
source of truth: the runtime writes the store first and updates the cache
afterwards. If the process dies between the two, the store is still correct
and the cache is rebuilt from it at the next start.
"""

import logging

from schemas.incident import Incident, IncidentStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 200


class ActiveIncidentCache:
    """Dict of incident id → latest known Incident snapshot.

    Bounded: once max_size is exceeded the oldest terminal incidents are
    evicted first, then the oldest of any status.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        self.max_size = max_size
        self._incidents: dict[str, Incident] = {}

    def put(self, incident: Incident) -> None:
        # Keep the newest snapshot; an older write arriving late is ignored.
        existing = self._incidents.get(incident.id)
        if existing is not None and existing.updated_at > incident.updated_at:
            return
        self._incidents[incident.id] = incident
        self._evict()

    def get(self, incident_id: str) -> Incident | None:
        return self._incidents.get(incident_id)

    def remove(self, incident_id: str) -> None:
        self._incidents.pop(incident_id, None)

    def list_active(
        self,
        project_id: str | None = None,
        status: IncidentStatus | None = None,
    ) -> list[Incident]:
        """Return cached incidents, newest first, optionally filtered."""
        incidents = [
            i for i in self._incidents.values()
            if (project_id is None or i.project_id == project_id)
            and (status is None or i.status == status)
        ]
        return sorted(incidents, key=lambda i: i.created_at, reverse=True)

    def hydrate(self, incidents: list[Incident]) -> None:
        """Load a batch of incidents read from the store at startup."""
        for incident in incidents:
            self.put(incident)
        logger.info("Hydrated active-incident cache with %d incidents.", len(incidents))

    def __len__(self) -> int:
        return len(self._incidents)

    def __contains__(self, incident_id: str) -> bool:
        return incident_id in self._incidents

    def _evict(self) -> None:
        overflow = len(self._incidents) - self.max_size
        if overflow <= 0:
            return
        by_age = sorted(
            self._incidents.values(),
            key=lambda i: (not i.status.is_terminal, i.created_at),
        )
        for incident in by_age[:overflow]:
            del self._incidents[incident.id]
