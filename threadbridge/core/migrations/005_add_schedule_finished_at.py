"""Migration: Record when a scheduled message reached a terminal status."""

import aiosqlite


async def up(db: aiosqlite.Connection) -> None:
    """Add nullable finished_at column to scheduled_messages."""
    try:
        await db.execute("ALTER TABLE scheduled_messages ADD COLUMN finished_at TEXT")
    except aiosqlite.OperationalError as e:
        if "duplicate column name" in str(e).lower():
            return
        raise
    await db.commit()
