"""Add per-channel and per-session model/agent/worktree/verbosity/run preferences."""

import aiosqlite


async def up(db: aiosqlite.Connection) -> None:
    """Apply migration - create preference tables."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_models (
            channel_id TEXT PRIMARY KEY,
            model_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS session_models (
            session_id TEXT PRIMARY KEY,
            model_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_agents (
            channel_id TEXT PRIMARY KEY,
            agent_name TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS session_agents (
            session_id TEXT PRIMARY KEY,
            agent_name TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_worktrees (
            channel_id TEXT PRIMARY KEY,
            enabled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS channel_verbosity (
            channel_id TEXT PRIMARY KEY,
            verbosity TEXT NOT NULL DEFAULT 'tools-and-text',
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS run_config (
            channel_id TEXT PRIMARY KEY,
            notify_chat INTEGER NOT NULL DEFAULT 1,
            notify_system INTEGER NOT NULL DEFAULT 1,
            webhook_url TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    await db.commit()


async def down(db: aiosqlite.Connection) -> None:
    """Revert migration."""
    for table in (
        "run_config",
        "channel_verbosity",
        "channel_worktrees",
        "session_agents",
        "channel_agents",
        "session_models",
        "channel_models",
    ):
        await db.execute(f"DROP TABLE IF EXISTS {table}")
    await db.commit()
