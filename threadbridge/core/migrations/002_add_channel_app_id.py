"""Migration: Add app_id column to channel_directories for multi-bot installs."""

import aiosqlite


async def up(db: aiosqlite.Connection) -> None:
    """Add nullable app_id column to channel_directories."""
    try:
        await db.execute("ALTER TABLE channel_directories ADD COLUMN app_id TEXT")
    except aiosqlite.OperationalError as e:
        if "duplicate column name" in str(e).lower():
            return
        raise
    await db.commit()
