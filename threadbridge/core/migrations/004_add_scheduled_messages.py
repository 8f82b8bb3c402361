"""Add scheduled_messages and bot_settings tables."""

import aiosqlite


async def up(db: aiosqlite.Connection) -> None:
    """Apply migration - create schedule and hub settings tables."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS scheduled_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            channel_id TEXT NOT NULL,
            thread_id TEXT,
            prompt TEXT NOT NULL,
            scheduled_at INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'completed', 'failed', 'cancelled')),
            created_by TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            error_message TEXT
        )
        """
    )
    await db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_scheduled_messages_due
            ON scheduled_messages(status, scheduled_at)
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_settings (
            app_id TEXT PRIMARY KEY,
            hub_channel_id TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.commit()


async def down(db: aiosqlite.Connection) -> None:
    """Revert migration."""
    await db.execute("DROP INDEX IF EXISTS idx_scheduled_messages_due")
    await db.execute("DROP TABLE IF EXISTS scheduled_messages")
    await db.execute("DROP TABLE IF EXISTS bot_settings")
    await db.commit()
