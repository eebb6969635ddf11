"""Assignment store - SQLite backend.

Zero-install backend using aiosqlite. Auto-creates schema on connect.
Assignment and lead status changes are versioned compare-and-set writes.
"""

from __future__ import annotations

import enum
import json
import sqlite3
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from lead_routing.core.config import Settings
from lead_routing.core.errors import InvalidTransition
from lead_routing.core.models import (
    Assignment,
    AssignmentStatus,
    Lead,
    LeadCandidate,
    LifecycleEvent,
)


# ---------------------------------------------------------------------------
# SQLite schema (auto-created on first connect)
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS leads (
    id                  TEXT PRIMARY KEY,
    category            TEXT NOT NULL,
    geography           TEXT NOT NULL,
    estimated_value     REAL NOT NULL DEFAULT 0,
    currency            TEXT NOT NULL DEFAULT 'USD',
    urgency             TEXT NOT NULL DEFAULT 'medium',
    specifications      TEXT NOT NULL DEFAULT '[]',
    status              TEXT NOT NULL DEFAULT 'pending',
    active_agent_id     TEXT,
    failure_reason      TEXT,
    version             INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS assignments (
    id                  TEXT PRIMARY KEY,
    lead_id             TEXT NOT NULL REFERENCES leads(id),
    agent_id            TEXT NOT NULL,
    rank                TEXT NOT NULL,
    score               REAL NOT NULL DEFAULT 0,
    match_reasons       TEXT NOT NULL DEFAULT '[]',
    status              TEXT NOT NULL DEFAULT 'offered',
    offered_at          TEXT NOT NULL,
    expires_at          TEXT NOT NULL,
    responded_at        TEXT,
    response_reason     TEXT,
    version             INTEGER NOT NULL DEFAULT 0,
    UNIQUE(lead_id, agent_id),
    CHECK (expires_at > offered_at)
);

CREATE TABLE IF NOT EXISTS lead_candidates (
    lead_id             TEXT NOT NULL REFERENCES leads(id),
    agent_id            TEXT NOT NULL,
    position            INTEGER NOT NULL,
    score               REAL NOT NULL DEFAULT 0,
    match_reasons       TEXT NOT NULL DEFAULT '[]',
    remaining_capacity  INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (lead_id, agent_id)
);

CREATE TABLE IF NOT EXISTS lifecycle_events (
    id                  TEXT PRIMARY KEY,
    event_type          TEXT NOT NULL,
    lead_id             TEXT NOT NULL,
    assignment_id       TEXT,
    agent_id            TEXT,
    payload             TEXT NOT NULL DEFAULT '{}',
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_leads_status ON leads(status);
CREATE INDEX IF NOT EXISTS idx_assignments_lead ON assignments(lead_id);
CREATE INDEX IF NOT EXISTS idx_assignments_status_expiry ON assignments(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_candidates_position ON lead_candidates(lead_id, position);
CREATE INDEX IF NOT EXISTS idx_events_lead ON lifecycle_events(lead_id, created_at);
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_str(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO string so text comparison matches time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert sqlite3.Row to a plain dict."""
    return {k: row[k] for k in row.keys()}


def _row_to_lead(row: sqlite3.Row) -> Lead:
    d = _row_to_dict(row)
    d["geography"] = json.loads(d["geography"])
    d["specifications"] = json.loads(d["specifications"] or "[]")
    return Lead(**d)


def _row_to_assignment(row: sqlite3.Row) -> Assignment:
    d = _row_to_dict(row)
    d["match_reasons"] = json.loads(d["match_reasons"] or "[]")
    return Assignment(**d)


def _row_to_candidate(row: sqlite3.Row) -> LeadCandidate:
    d = _row_to_dict(row)
    d["match_reasons"] = json.loads(d["match_reasons"] or "[]")
    return LeadCandidate(**d)


def _row_to_event(row: sqlite3.Row) -> LifecycleEvent:
    d = _row_to_dict(row)
    d["payload"] = json.loads(d["payload"] or "{}")
    return LifecycleEvent(**d)


def _column_value(val: Any) -> Any:
    if isinstance(val, enum.Enum):
        return val.value
    if isinstance(val, datetime):
        return _dt_str(val)
    if isinstance(val, bool):
        return int(val)
    return val


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------


class Database:
    """Async SQLite connection manager and assignment store operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._conn: aiosqlite.Connection | None = None

    def _resolve_path(self) -> str:
        url = self.settings.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):]
        return url

    async def connect(self) -> None:
        path = self._resolve_path()
        self._conn = await aiosqlite.connect(path)
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._init_schema()

    async def _init_schema(self) -> None:
        """Auto-create tables if they don't exist."""
        await self.conn.executescript(SCHEMA_SQL)
        await self.conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # -----------------------------------------------------------------------
    # Leads
    # -----------------------------------------------------------------------

    async def create_lead(self, lead: Lead) -> Lead:
        """Insert a lead. Re-inserting an existing id returns the stored row."""
        now = _now()
        created = lead.created_at or now
        await self.conn.execute(
            """
            INSERT OR IGNORE INTO leads (
                id, category, geography, estimated_value, currency, urgency,
                specifications, status, active_agent_id, failure_reason,
                version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lead.id, lead.category,
                lead.geography.model_dump_json(),
                lead.estimated_value, lead.currency, lead.urgency.value,
                json.dumps(lead.specifications), lead.status.value,
                lead.active_agent_id, lead.failure_reason, lead.version,
                _dt_str(created), _dt_str(now),
            ),
        )
        await self.conn.commit()
        result = await self.get_lead(lead.id)
        assert result is not None
        return result

    async def get_lead(self, lead_id: str) -> Lead | None:
        cursor = await self.conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,))
        row = await cursor.fetchone()
        return _row_to_lead(row) if row else None

    async def update_lead(
        self, lead_id: str, expected_version: int | None = None, **fields: Any
    ) -> Lead | None:
        """Versioned update of lead fields.

        Returns the updated lead, or None when the lead is missing or
        ``expected_version`` no longer matches. Passing ``expected_version=None``
        skips the version check (still bumps the version).
        """
        set_clauses = []
        values: list[Any] = []
        for key, val in fields.items():
            set_clauses.append(f"{key} = ?")
            values.append(_column_value(val))

        set_clauses.append("version = version + 1")
        set_clauses.append("updated_at = ?")
        values.append(_dt_str(_now()))

        query = f"UPDATE leads SET {', '.join(set_clauses)} WHERE id = ?"
        values.append(lead_id)
        if expected_version is not None:
            query += " AND version = ?"
            values.append(expected_version)

        cursor = await self.conn.execute(query, values)
        await self.conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_lead(lead_id)

    # -----------------------------------------------------------------------
    # Assignments
    # -----------------------------------------------------------------------

    async def create_assignment(self, assignment: Assignment) -> Assignment:
        """Insert an offered assignment. One assignment per (lead, agent) pair."""
        try:
            await self.conn.execute(
                """
                INSERT INTO assignments (
                    id, lead_id, agent_id, rank, score, match_reasons, status,
                    offered_at, expires_at, responded_at, response_reason, version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    assignment.id, assignment.lead_id, assignment.agent_id,
                    assignment.rank.value, assignment.score,
                    json.dumps(assignment.match_reasons), assignment.status.value,
                    _dt_str(assignment.offered_at), _dt_str(assignment.expires_at),
                    _dt_str(assignment.responded_at), assignment.response_reason,
                    assignment.version,
                ),
            )
        except sqlite3.IntegrityError as e:
            await self.conn.rollback()
            raise InvalidTransition(
                f"Agent {assignment.agent_id} already has an assignment for lead "
                f"{assignment.lead_id}"
            ) from e
        await self.conn.commit()
        result = await self.get_assignment(assignment.id)
        assert result is not None
        return result

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        cursor = await self.conn.execute(
            "SELECT * FROM assignments WHERE id = ?", (assignment_id,)
        )
        row = await cursor.fetchone()
        return _row_to_assignment(row) if row else None

    async def get_assignments_for_lead(self, lead_id: str) -> list[Assignment]:
        cursor = await self.conn.execute(
            "SELECT * FROM assignments WHERE lead_id = ? ORDER BY offered_at, rowid",
            (lead_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_assignment(r) for r in rows]

    async def get_offered_assignments(self) -> list[Assignment]:
        """All assignments still waiting for a response (startup recovery scan)."""
        cursor = await self.conn.execute(
            "SELECT * FROM assignments WHERE status = 'offered' ORDER BY expires_at"
        )
        rows = await cursor.fetchall()
        return [_row_to_assignment(r) for r in rows]

    async def get_overdue_assignments(self, now: datetime) -> list[Assignment]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM assignments
            WHERE status = 'offered' AND expires_at <= ?
            ORDER BY expires_at
            """,
            (_dt_str(now),),
        )
        rows = await cursor.fetchall()
        return [_row_to_assignment(r) for r in rows]

    async def compare_and_set_assignment(
        self,
        assignment_id: str,
        expected_version: int,
        status: AssignmentStatus,
        responded_at: datetime | None = None,
        response_reason: str | None = None,
    ) -> Assignment | None:
        """Move an offered assignment to ``status`` if nobody changed it first.

        Returns the updated assignment, or None when the CAS lost.
        """
        cursor = await self.conn.execute(
            """
            UPDATE assignments
            SET status = ?, responded_at = ?, response_reason = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'offered'
            """,
            (
                status.value, _dt_str(responded_at), response_reason,
                assignment_id, expected_version,
            ),
        )
        await self.conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_assignment(assignment_id)

    # -----------------------------------------------------------------------
    # Ranked candidates
    # -----------------------------------------------------------------------

    async def replace_candidates(self, lead_id: str, candidates: list[LeadCandidate]) -> None:
        """Replace the ranked candidate snapshot for a lead."""
        await self.conn.execute("DELETE FROM lead_candidates WHERE lead_id = ?", (lead_id,))
        await self.conn.executemany(
            """
            INSERT INTO lead_candidates (
                lead_id, agent_id, position, score, match_reasons, remaining_capacity
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    c.lead_id, c.agent_id, c.position, c.score,
                    json.dumps(c.match_reasons), c.remaining_capacity,
                )
                for c in candidates
            ],
        )
        await self.conn.commit()

    async def get_candidates(self, lead_id: str) -> list[LeadCandidate]:
        cursor = await self.conn.execute(
            "SELECT * FROM lead_candidates WHERE lead_id = ? ORDER BY position",
            (lead_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_candidate(r) for r in rows]

    # -----------------------------------------------------------------------
    # Lifecycle events
    # -----------------------------------------------------------------------

    async def insert_event(self, event: LifecycleEvent) -> None:
        await self.conn.execute(
            """
            INSERT INTO lifecycle_events (
                id, event_type, lead_id, assignment_id, agent_id, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id, event.event_type.value, event.lead_id,
                event.assignment_id, event.agent_id,
                json.dumps(event.payload, default=str),
                _dt_str(event.created_at or _now()),
            ),
        )
        await self.conn.commit()

    async def get_events(self, lead_id: str) -> list[LifecycleEvent]:
        cursor = await self.conn.execute(
            "SELECT * FROM lifecycle_events WHERE lead_id = ? ORDER BY created_at, rowid",
            (lead_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_event(r) for r in rows]
