"""Database migration runner - executes pending migrations in order.

Migrations are ``###_name.py`` modules exposing ``async def up(db)``. They
must be additive (new tables, new nullable columns) so that existing
installations keep working against old database files.

A migration commits its own work and the version row is recorded in a
later commit, so a crash in between re-runs it on the next start. Every
migration must therefore be idempotent (`IF NOT EXISTS`, tolerate
duplicate columns).
"""

import importlib.util
import re
from pathlib import Path
from typing import cast

import aiosqlite
import structlog

from threadbridge.core.migrations.constants import INIT_FILE_NAME, MIGRATIONS_TABLE

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    """Return migration files sorted by version prefix."""
    return sorted(f for f in directory.glob("*.py") if re.match(r"^\d{3}_", f.name) and f.name != INIT_FILE_NAME)


async def run_pending_migrations(db: aiosqlite.Connection, directory: Path = MIGRATIONS_DIR) -> int:
    """Run all pending migrations in order.

    Args:
        db: Database connection
        directory: Directory holding migration modules

    Returns:
        Number of migrations applied
    """
    await db.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
            version TEXT PRIMARY KEY,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)
    await db.commit()

    cursor = await db.execute(f"SELECT version FROM {MIGRATIONS_TABLE}")
    rows = await cursor.fetchall()
    applied: set[str] = {cast(str, row[0]) for row in rows}

    applied_count = 0
    for migration_file in discover_migrations(directory):
        version = migration_file.stem  # e.g., "001_initial_tables"
        if version in applied:
            continue

        logger.info("Applying migration: %s", version)

        spec = importlib.util.spec_from_file_location(version, migration_file)
        if spec is None or spec.loader is None:
            raise RuntimeError(f"Failed to load migration: {version}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        if not hasattr(module, "up"):
            raise RuntimeError(f"Migration {version} missing up() function")

        await module.up(db)

        await db.execute(f"INSERT INTO {MIGRATIONS_TABLE} (version) VALUES (?)", (version,))
        await db.commit()

        logger.info("Migration applied: %s", version)
        applied_count += 1

    return applied_count
