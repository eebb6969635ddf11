"""Initialize the routing database by running the migration."""

from __future__ import annotations

import asyncio
from pathlib import Path

import asyncpg

from lead_routing.core.config import Settings

MIGRATION = Path(__file__).parent.parent.parent.parent / "migrations" / "001_routing_schema.sql"


async def run_migration(settings: Settings | None = None) -> None:
    s = settings or Settings(use_sqlite=False)

    if not MIGRATION.exists():
        print(f"Migration file not found: {MIGRATION}")
        return

    sql = MIGRATION.read_text(encoding="utf-8")

    # Connect to the maintenance database to create the routing database if needed
    base_url, db_name = s.database_url.rsplit("/", 1)

    try:
        conn = await asyncpg.connect(f"{base_url}/postgres")
        exists = await conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            print(f"Created database: {db_name}")
        else:
            print(f"Database already exists: {db_name}")
        await conn.close()
    except (OSError, asyncpg.PostgresError) as e:
        print(f"Note: Could not create database (may already exist): {e}")

    conn = await asyncpg.connect(s.database_url)
    try:
        await conn.execute(sql)
        print("Migration completed successfully.")
    except asyncpg.PostgresError as e:
        print(f"Migration error: {e}")
        raise
    finally:
        await conn.close()


def main() -> None:
    asyncio.run(run_migration())


if __name__ == "__main__":
    main()
