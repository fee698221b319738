"""Incident store — SQLite-backed source of truth for incidents and agent runs.

Everything durable lives here. The active-incident cache and the event
stream are derived views; after a crash the store is what the runtime
recovers from.

Guarantees enforced at the database level rather than in Python:
- At most one non-RESOLVED incident per fingerprint (partial unique index),
  with check-and-insert done inside a single BEGIN IMMEDIATE transaction so
  racing submissions serialize on the write lock.
- Terminal statuses are sticky: status writes carry a
  ``status NOT IN ('RESOLVED', 'FAILED')`` guard.
- An agent run is inserted as WORKING and completed exactly once. The
  completion write is guarded on a non-terminal status, so a terminal run
  is never modified.

The sqlite3 module is synchronous, so every public method is a coroutine
that runs the blocking work in a worker thread via asyncio.to_thread. Each
operation opens its own short-lived connection; WAL mode lets readers
proceed while a writer holds the lock.

Usage:
    store = IncidentStore("guardian.db")
    incident, created = await store.create_or_increment(incident)
    await store.add_run(run)
    runs = await store.list_runs(incident.id)
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable

from core.errors import IncidentNotFoundError, TerminalStateError
from schemas.agent_run import AgentRun
from schemas.incident import (
    TERMINAL_STATUSES,
    Incident,
    IncidentMetadata,
    IncidentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in TERMINAL_STATUSES)

_INCIDENT_COLUMNS = (
    "id, title, description, source, severity, status, status_message, fingerprint, "
    "occurrence_count, last_seen, created_at, updated_at, project_id, metadata"
)


class IncidentStore:
    """Durable record of incidents and per-step agent runs.

    Attributes:
        db_path: Path of the SQLite database file. Created on first use.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._init_db()

    # ── Schema ────────────────────────────────────────────────────────────────

    def _init_db(self) -> None:
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS incidents (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    source TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    status TEXT NOT NULL,
                    status_message TEXT,
                    fingerprint TEXT NOT NULL,
                    occurrence_count INTEGER NOT NULL DEFAULT 1,
                    last_seen TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    project_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)

            # One open incident per fingerprint. RESOLVED rows are excluded so
            # a fault that recurs after resolution opens a fresh incident.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_open_fingerprint
                ON incidents(fingerprint) WHERE status != 'RESOLVED'
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_created ON incidents(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents(status)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_runs (
                    id TEXT PRIMARY KEY,
                    incident_id TEXT NOT NULL REFERENCES incidents(id),
                    agent_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    thoughts TEXT NOT NULL DEFAULT '',
                    output TEXT NOT NULL DEFAULT '{}',
                    attempt INTEGER NOT NULL DEFAULT 1,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_incident ON agent_runs(incident_id)")

            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
            conn.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

    @contextmanager
    def _connection(self):
        """Yield an autocommit connection; callers open transactions explicitly."""
        conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            yield conn
        finally:
            conn.close()

    # ── Incidents ─────────────────────────────────────────────────────────────

    async def create_or_increment(self, incident: Incident) -> tuple[Incident, bool]:
        """Insert a new incident unless an open one shares its fingerprint.

        The lookup and the insert (or the increment) happen in one
        BEGIN IMMEDIATE transaction, so two concurrent calls with the same
        fingerprint can never both insert.

        Args:
            incident: The candidate incident, already fingerprinted.

        Returns:
            (stored_incident, created). When created is False the returned
            incident is the existing open one with occurrence_count
            incremented and last_seen refreshed.
        """
        return await asyncio.to_thread(self._create_or_increment, incident)

    def _create_or_increment(self, incident: Incident) -> tuple[Incident, bool]:
        with self._connection() as conn:
            for _ in range(2):
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        f"SELECT {_INCIDENT_COLUMNS} FROM incidents "
                        "WHERE fingerprint = ? AND status != 'RESOLVED'",
                        (incident.fingerprint,),
                    ).fetchone()

                    if row is not None:
                        now = utcnow()
                        conn.execute(
                            "UPDATE incidents SET occurrence_count = occurrence_count + 1, "
                            "last_seen = ?, updated_at = ? WHERE id = ?",
                            (now.isoformat(), now.isoformat(), row["id"]),
                        )
                        conn.execute("COMMIT")
                        existing = _row_to_incident(row)
                        return existing.model_copy(update={
                            "occurrence_count": existing.occurrence_count + 1,
                            "last_seen": now,
                            "updated_at": now,
                        }), False

                    conn.execute(
                        f"INSERT INTO incidents ({_INCIDENT_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        _incident_to_row(incident),
                    )
                    conn.execute("COMMIT")
                    return incident, True

                except sqlite3.IntegrityError:
                    # Lost a race the write lock should have prevented (e.g. a
                    # second process on the same file). Retry as an increment.
                    conn.execute("ROLLBACK")
                    logger.warning("Fingerprint %s inserted concurrently; retrying.", incident.fingerprint)
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        raise RuntimeError(f"Could not record incident with fingerprint {incident.fingerprint}.")

    async def get(self, incident_id: str) -> Incident:
        """Load one incident.

        Raises:
            IncidentNotFoundError: If no incident has this id.
        """
        return await asyncio.to_thread(self._get, incident_id)

    def _get(self, incident_id: str) -> Incident:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE id = ?", (incident_id,)
            ).fetchone()
        if row is None:
            raise IncidentNotFoundError(incident_id)
        return _row_to_incident(row)

    async def update(self, incident: Incident) -> Incident:
        """Persist status, status message and metadata of a non-terminal incident.

        occurrence_count and last_seen are owned by deduplication and are
        never written here, so a stale workflow snapshot cannot roll them back.

        Returns:
            The stored row after the write, so occurrence_count and last_seen
            reflect any duplicates recorded meanwhile.

        Raises:
            IncidentNotFoundError: If the incident does not exist.
            TerminalStateError: If the stored incident is already RESOLVED or
                FAILED.
        """
        return await asyncio.to_thread(self._update, incident)

    def _update(self, incident: Incident) -> Incident:
        updated = incident.model_copy(update={"updated_at": utcnow()})
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE incidents SET status = ?, status_message = ?, metadata = ?, "
                "project_id = ?, updated_at = ? "
                f"WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
                (
                    updated.status.value,
                    updated.status_message,
                    updated.metadata.model_dump_json(),
                    updated.metadata.project_id,
                    updated.updated_at.isoformat(),
                    updated.id,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute("SELECT status FROM incidents WHERE id = ?", (incident.id,)).fetchone()
                if row is None:
                    raise IncidentNotFoundError(incident.id)
                raise TerminalStateError(incident.id, row["status"])
            row = conn.execute(
                f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE id = ?", (incident.id,)
            ).fetchone()
        return _row_to_incident(row)

    async def transition(
        self,
        incident_id: str,
        expected: IncidentStatus,
        target: IncidentStatus,
        status_message: str | None = None,
        metadata_updates: dict | None = None,
    ) -> Incident | None:
        """Compare-and-set the status of an incident.

        Used by the approval gate to claim a suspended incident: of two
        concurrent approve/reject calls, exactly one sees the expected status
        and wins; the other gets None.

        Args:
            incident_id: Incident to transition.
            expected: Status the incident must currently have.
            target: Status to move to.
            status_message: Optional human-readable message to store.
            metadata_updates: Optional metadata fields to set, applied to the
                stored metadata inside the same transaction.

        Returns:
            The updated incident, or None if the current status was not
            ``expected``.

        Raises:
            IncidentNotFoundError: If the incident does not exist.
        """
        return await asyncio.to_thread(
            self._transition, incident_id, expected, target, status_message, metadata_updates
        )

    def _transition(self, incident_id, expected, target, status_message, metadata_updates):
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE id = ?", (incident_id,)
                ).fetchone()
                if row is None:
                    conn.execute("ROLLBACK")
                    raise IncidentNotFoundError(incident_id)
                if row["status"] != expected.value:
                    conn.execute("ROLLBACK")
                    return None

                current = _row_to_incident(row)
                updated = current.model_copy(update={
                    "status": target,
                    "status_message": status_message,
                    "metadata": current.metadata.model_copy(update=metadata_updates or {}),
                    "updated_at": utcnow(),
                })
                conn.execute(
                    "UPDATE incidents SET status = ?, status_message = ?, metadata = ?, updated_at = ? "
                    "WHERE id = ?",
                    (
                        updated.status.value,
                        updated.status_message,
                        updated.metadata.model_dump_json(),
                        updated.updated_at.isoformat(),
                        incident_id,
                    ),
                )
                conn.execute("COMMIT")
                return updated
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

    async def list_recent(self, limit: int = 20) -> list[Incident]:
        """Return the most recently created incidents, newest first."""
        return await self.list_incidents(limit=limit)

    async def list_incidents(
        self,
        status: IncidentStatus | None = None,
        project_id: str | None = None,
        limit: int = 100,
    ) -> list[Incident]:
        return await asyncio.to_thread(self._list, status, project_id, limit)

    def _list(self, status, project_id, limit) -> list[Incident]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_INCIDENT_COLUMNS} FROM incidents {where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    async def list_in_status(self, statuses: Iterable[IncidentStatus]) -> list[Incident]:
        """Return every incident whose status is one of ``statuses``."""
        values = [s.value for s in statuses]
        return await asyncio.to_thread(self._list_in_status, values)

    def _list_in_status(self, values: list[str]) -> list[Incident]:
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_INCIDENT_COLUMNS} FROM incidents WHERE status IN ({placeholders}) "
                "ORDER BY created_at",
                values,
            ).fetchall()
        return [_row_to_incident(r) for r in rows]

    # ── Agent runs ────────────────────────────────────────────────────────────

    async def add_run(self, run: AgentRun) -> AgentRun:
        """Insert a new agent run, normally in WORKING status."""
        await asyncio.to_thread(self._add_run, run)
        return run

    def _add_run(self, run: AgentRun) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO agent_runs (id, incident_id, agent_name, status, thoughts, output, "
                "attempt, started_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.incident_id,
                    run.agent_name.value,
                    run.status.value,
                    run.thoughts,
                    json.dumps(run.output, default=str),
                    run.attempt,
                    run.started_at.isoformat(),
                    run.completed_at.isoformat() if run.completed_at else None,
                ),
            )

    async def complete_run(self, run: AgentRun) -> AgentRun:
        """Write the terminal status and output of a previously added run.

        Raises:
            ValueError: If ``run`` is not terminal, or the stored run is
                already terminal (or missing).
        """
        if not run.status.is_terminal:
            raise ValueError(f"complete_run needs a terminal status, got {run.status.value}")
        await asyncio.to_thread(self._complete_run, run)
        return run

    def _complete_run(self, run: AgentRun) -> None:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE agent_runs SET status = ?, thoughts = ?, output = ?, completed_at = ? "
                "WHERE id = ? AND status NOT IN ('COMPLETED', 'FAILED')",
                (
                    run.status.value,
                    run.thoughts,
                    json.dumps(run.output, default=str),
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.id,
                ),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Agent run {run.id} is missing or already completed")

    async def list_runs(self, incident_id: str) -> list[AgentRun]:
        """Return every run for an incident in the order they were recorded."""
        return await asyncio.to_thread(self._list_runs, incident_id)

    def _list_runs(self, incident_id: str) -> list[AgentRun]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_runs WHERE incident_id = ? ORDER BY rowid",
                (incident_id,),
            ).fetchall()
        return [
            AgentRun(
                id=r["id"],
                incident_id=r["incident_id"],
                agent_name=r["agent_name"],
                status=r["status"],
                thoughts=r["thoughts"],
                output=json.loads(r["output"]) if r["output"] else {},
                attempt=r["attempt"],
                started_at=datetime.fromisoformat(r["started_at"]),
                completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
            )
            for r in rows
        ]


# ── Row mapping ───────────────────────────────────────────────────────────────

def _incident_to_row(incident: Incident) -> tuple:
    return (
        incident.id,
        incident.title,
        incident.description,
        incident.source.value,
        incident.severity.value,
        incident.status.value,
        incident.status_message,
        incident.fingerprint,
        incident.occurrence_count,
        incident.last_seen.isoformat(),
        incident.created_at.isoformat(),
        incident.updated_at.isoformat(),
        incident.metadata.project_id,
        incident.metadata.model_dump_json(),
    )


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        source=row["source"],
        severity=row["severity"],
        status=row["status"],
        status_message=row["status_message"],
        fingerprint=row["fingerprint"],
        occurrence_count=row["occurrence_count"],
        last_seen=datetime.fromisoformat(row["last_seen"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        metadata=IncidentMetadata.model_validate_json(row["metadata"]),
    )
