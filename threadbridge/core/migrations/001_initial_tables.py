"""Create the core thread, fragment, credential and worktree tables."""

import aiosqlite


async def up(db: aiosqlite.Connection) -> None:
    """Apply migration."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS thread_sessions (
            thread_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS part_messages (
            part_id TEXT PRIMARY KEY,
            message_id TEXT NOT NULL,
            thread_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_part_messages_message ON part_messages(message_id)")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_tokens (
            app_id TEXT PRIMARY KEY,
            token TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_directories (
            channel_id TEXT PRIMARY KEY,
            directory TEXT NOT NULL,
            channel_type TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_auto_start (
            thread_id TEXT PRIMARY KEY,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS bot_api_keys (
            app_id TEXT PRIMARY KEY,
            gemini_api_key TEXT,
            xai_api_key TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS thread_worktrees (
            thread_id TEXT PRIMARY KEY,
            worktree_name TEXT NOT NULL,
            worktree_directory TEXT,
            project_directory TEXT NOT NULL,
            status TEXT DEFAULT 'pending',
            error_message TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.commit()
