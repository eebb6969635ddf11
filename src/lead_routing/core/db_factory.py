"""Database factory - selects the store backend from configuration."""

from __future__ import annotations

from lead_routing.core.config import Settings


def create_database(settings: Settings | None = None):
    """Return the configured assignment store.

    - use_sqlite=True uses the aiosqlite backend (development and tests).
    - Otherwise uses the asyncpg PostgreSQL backend.
    """
    s = settings or Settings()
    if s.use_sqlite:
        from lead_routing.core.database import Database
        return Database(s)
    else:
        from lead_routing.core.database_pg import PostgresDatabase
        return PostgresDatabase(s)
