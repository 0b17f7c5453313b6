"""Auto-migration runner: applies pending SQL migrations on startup.

Discovers sql/migrations/*.sql files, tracks applied versions in
warden.schema_migrations, and executes pending ones in order.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_BOOTSTRAP_SQL = (
    "CREATE SCHEMA IF NOT EXISTS warden",
    """
    CREATE TABLE IF NOT EXISTS warden.schema_migrations (
        version    VARCHAR(20) PRIMARY KEY,
        name       VARCHAR(255) NOT NULL,
        checksum   VARCHAR(64) NOT NULL,
        applied_at TIMESTAMPTZ DEFAULT now()
    )
    """,
)


def split_statements(sql: str) -> list[str]:
    """Split a migration file into single statements.

    asyncpg prepares each statement, so multi-statement strings must be
    executed one at a time. Comment lines are dropped.
    """
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    statements = [s.strip() for s in "\n".join(lines).split(";")]
    return [s for s in statements if s]


async def run_migrations(engine: AsyncEngine, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending SQL migrations and return list of newly applied names."""
    directory = migrations_dir or _MIGRATIONS_DIR
    if not directory.is_dir():
        logger.debug("No migrations directory found at %s", directory)
        return []

    # Discover migration files sorted by name (e.g. 001_initial_schema.sql)
    files = sorted(directory.glob("*.sql"))
    if not files:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        # Self-bootstrap: create schema and tracking table if missing
        for statement in _BOOTSTRAP_SQL:
            await conn.execute(text(statement))

        result = await conn.execute(text("SELECT version FROM warden.schema_migrations"))
        existing = {row[0] for row in result}

        for path in files:
            version = path.stem.split("_", 1)[0]
            if version in existing:
                continue

            sql = path.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()

            logger.info("Applying migration %s ...", path.name)
            for statement in split_statements(sql):
                await conn.execute(text(statement))
            await conn.execute(
                text(
                    "INSERT INTO warden.schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": checksum},
            )
            applied.append(path.stem)
            logger.info("Migration %s applied", path.name)

    if applied:
        logger.info("Migrations applied: %s", applied)
    else:
        logger.debug("All migrations up to date")

    return applied
