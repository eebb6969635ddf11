"""Assignment store - PostgreSQL backend (asyncpg).

Production backend using an asyncpg connection pool. The schema lives in
``migrations/001_routing_schema.sql`` (applied by ``lead-routing-init-db``).
"""

from __future__ import annotations

import enum
import json
from datetime import datetime, timezone
from typing import Any

import asyncpg

from lead_routing.core.config import Settings
from lead_routing.core.errors import InvalidTransition
from lead_routing.core.models import (
    Assignment,
    AssignmentStatus,
    Lead,
    LeadCandidate,
    LifecycleEvent,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json(value: Any) -> Any:
    # asyncpg hands jsonb back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def _row_to_lead(row: asyncpg.Record) -> Lead:
    d = dict(row)
    d["geography"] = _json(d["geography"])
    d["specifications"] = _json(d["specifications"]) or []
    return Lead(**d)


def _row_to_assignment(row: asyncpg.Record) -> Assignment:
    d = dict(row)
    d["match_reasons"] = _json(d["match_reasons"]) or []
    return Assignment(**d)


def _row_to_candidate(row: asyncpg.Record) -> LeadCandidate:
    d = dict(row)
    d["match_reasons"] = _json(d["match_reasons"]) or []
    return LeadCandidate(**d)


def _row_to_event(row: asyncpg.Record) -> LifecycleEvent:
    d = dict(row)
    d["payload"] = _json(d["payload"]) or {}
    return LifecycleEvent(**d)


class PostgresDatabase:
    """Async PostgreSQL connection manager and assignment store operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.settings.database_url, min_size=2, max_size=10,
            server_settings={"search_path": "routing, public"},
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    # -----------------------------------------------------------------------
    # Leads
    # -----------------------------------------------------------------------

    async def create_lead(self, lead: Lead) -> Lead:
        """Insert a lead. Re-inserting an existing id returns the stored row."""
        now = _now()
        await self.pool.execute(
            """
            INSERT INTO leads (
                id, category, geography, estimated_value, currency, urgency,
                specifications, status, active_agent_id, failure_reason,
                version, created_at, updated_at
            ) VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13)
            ON CONFLICT (id) DO NOTHING
            """,
            lead.id, lead.category, lead.geography.model_dump_json(),
            lead.estimated_value, lead.currency, lead.urgency.value,
            json.dumps(lead.specifications), lead.status.value,
            lead.active_agent_id, lead.failure_reason, lead.version,
            lead.created_at or now, now,
        )
        result = await self.get_lead(lead.id)
        assert result is not None
        return result

    async def get_lead(self, lead_id: str) -> Lead | None:
        row = await self.pool.fetchrow("SELECT * FROM leads WHERE id = $1", lead_id)
        return _row_to_lead(row) if row else None

    async def update_lead(
        self, lead_id: str, expected_version: int | None = None, **fields: Any
    ) -> Lead | None:
        """Versioned update of lead fields. Returns None if missing or stale."""
        set_clauses = []
        values: list[Any] = []
        for i, (key, val) in enumerate(fields.items(), start=1):
            if isinstance(val, enum.Enum):
                val = val.value
            set_clauses.append(f"{key} = ${i}")
            values.append(val)

        n = len(values)
        set_clauses.append("version = version + 1")
        set_clauses.append(f"updated_at = ${n + 1}")
        values.append(_now())

        query = f"UPDATE leads SET {', '.join(set_clauses)} WHERE id = ${n + 2}"
        values.append(lead_id)
        if expected_version is not None:
            query += f" AND version = ${n + 3}"
            values.append(expected_version)
        query += " RETURNING *"

        row = await self.pool.fetchrow(query, *values)
        return _row_to_lead(row) if row else None

    # -----------------------------------------------------------------------
    # Assignments
    # -----------------------------------------------------------------------

    async def create_assignment(self, assignment: Assignment) -> Assignment:
        """Insert an offered assignment. One assignment per (lead, agent) pair."""
        try:
            row = await self.pool.fetchrow(
                """
                INSERT INTO assignments (
                    id, lead_id, agent_id, rank, score, match_reasons, status,
                    offered_at, expires_at, responded_at, response_reason, version
                ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12)
                RETURNING *
                """,
                assignment.id, assignment.lead_id, assignment.agent_id,
                assignment.rank.value, assignment.score,
                json.dumps(assignment.match_reasons), assignment.status.value,
                assignment.offered_at, assignment.expires_at,
                assignment.responded_at, assignment.response_reason,
                assignment.version,
            )
        except asyncpg.UniqueViolationError as e:
            raise InvalidTransition(
                f"Agent {assignment.agent_id} already has an assignment for lead "
                f"{assignment.lead_id}"
            ) from e
        return _row_to_assignment(row)

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM assignments WHERE id = $1", assignment_id
        )
        return _row_to_assignment(row) if row else None

    async def get_assignments_for_lead(self, lead_id: str) -> list[Assignment]:
        rows = await self.pool.fetch(
            "SELECT * FROM assignments WHERE lead_id = $1 ORDER BY offered_at, seq",
            lead_id,
        )
        return [_row_to_assignment(r) for r in rows]

    async def get_offered_assignments(self) -> list[Assignment]:
        rows = await self.pool.fetch(
            "SELECT * FROM assignments WHERE status = 'offered' ORDER BY expires_at"
        )
        return [_row_to_assignment(r) for r in rows]

    async def get_overdue_assignments(self, now: datetime) -> list[Assignment]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM assignments
            WHERE status = 'offered' AND expires_at <= $1
            ORDER BY expires_at
            """,
            now,
        )
        return [_row_to_assignment(r) for r in rows]

    async def compare_and_set_assignment(
        self,
        assignment_id: str,
        expected_version: int,
        status: AssignmentStatus,
        responded_at: datetime | None = None,
        response_reason: str | None = None,
    ) -> Assignment | None:
        """Move an offered assignment to ``status`` if nobody changed it first."""
        row = await self.pool.fetchrow(
            """
            UPDATE assignments
            SET status = $1, responded_at = $2, response_reason = $3, version = version + 1
            WHERE id = $4 AND version = $5 AND status = 'offered'
            RETURNING *
            """,
            status.value, responded_at, response_reason, assignment_id, expected_version,
        )
        return _row_to_assignment(row) if row else None

    # -----------------------------------------------------------------------
    # Ranked candidates
    # -----------------------------------------------------------------------

    async def replace_candidates(self, lead_id: str, candidates: list[LeadCandidate]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM lead_candidates WHERE lead_id = $1", lead_id)
                await conn.executemany(
                    """
                    INSERT INTO lead_candidates (
                        lead_id, agent_id, position, score, match_reasons, remaining_capacity
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                    """,
                    [
                        (
                            c.lead_id, c.agent_id, c.position, c.score,
                            json.dumps(c.match_reasons), c.remaining_capacity,
                        )
                        for c in candidates
                    ],
                )

    async def get_candidates(self, lead_id: str) -> list[LeadCandidate]:
        rows = await self.pool.fetch(
            "SELECT * FROM lead_candidates WHERE lead_id = $1 ORDER BY position",
            lead_id,
        )
        return [_row_to_candidate(r) for r in rows]

    # -----------------------------------------------------------------------
    # Lifecycle events
    # -----------------------------------------------------------------------

    async def insert_event(self, event: LifecycleEvent) -> None:
        await self.pool.execute(
            """
            INSERT INTO lifecycle_events (
                id, event_type, lead_id, assignment_id, agent_id, payload, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            """,
            event.id, event.event_type.value, event.lead_id,
            event.assignment_id, event.agent_id,
            json.dumps(event.payload, default=str),
            event.created_at or _now(),
        )

    async def get_events(self, lead_id: str) -> list[LifecycleEvent]:
        rows = await self.pool.fetch(
            "SELECT * FROM lifecycle_events WHERE lead_id = $1 ORDER BY created_at, seq",
            lead_id,
        )
        return [_row_to_event(r) for r in rows]
