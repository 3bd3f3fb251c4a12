"""
Schema migrations for the object store.

Forward-only SQL files in ``migrations/`` named ``NNN_description.sql`` are
applied in version order, each in its own transaction. A session advisory
lock serializes controller replicas that start at the same time.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary constant shared by every replica
MIGRATION_LOCK_ID = 727_001


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


def discover_migrations(directory: Path = None) -> List[Migration]:
    """
    List migration files in version order.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry.name, entry))
    return migrations


async def _applied_versions(conn: asyncpg.Connection) -> Set[str]:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def _apply(conn: asyncpg.Connection, migration: Migration) -> None:
    sql = migration.path.read_text(encoding="utf-8")
    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            migration.version,
            migration.filename,
        )
    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> List[str]:
    """
    Apply all pending migrations.

    Returns:
        Filenames of the migrations applied by this call.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails. It is rolled back;
            earlier migrations stay applied.
    """
    migrations = discover_migrations()
    applied: List[str] = []

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        try:
            done = await _applied_versions(conn)
            for migration in migrations:
                if migration.version in done:
                    continue
                await _apply(conn, migration)
                applied.append(migration.filename)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    if applied:
        logger.info(f"Applied {len(applied)} migration(s)")
    else:
        logger.info("Database schema is up to date")
    return applied
