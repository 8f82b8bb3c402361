"""Database manager for threadbridge - durable state shared by all core services.

Every mutation is a single statement or a single transaction. Read-modify-write
paths use insert-or-replace or guarded ``UPDATE ... WHERE status = 'pending'``
statements instead of separate read-then-write steps.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite
import structlog

from threadbridge.constants import VERBOSITY_LEVELS, VERBOSITY_TOOLS_AND_TEXT

from . import db_models
from .dates import to_epoch_ms
from .errors import WorktreeExistsError
from .migrations.runner import run_pending_migrations
from .models import (
    BotApiKeys,
    BotSettings,
    ChannelDirectory,
    FragmentRecord,
    RunConfig,
    ScheduleStatus,
    WorktreeStatus,
)
from .security import CredentialVault, is_encrypted

logger = structlog.get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Db:
    """Database interface for thread/session/worktree/schedule state."""

    def __init__(
        self,
        db_path: str,
        vault: Optional[CredentialVault] = None,
        default_verbosity: str = VERBOSITY_TOOLS_AND_TEXT,
    ) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file
            vault: Credential vault for secret columns (defaults to one rooted next to the database)
            default_verbosity: Verbosity returned for channels without an override
        """
        self.db_path = db_path
        self.vault = vault or CredentialVault(Path(db_path).parent)
        self.default_verbosity = default_verbosity
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and apply pending migrations."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("Opening database at: %s", self.db_path)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        applied = await run_pending_migrations(self._db)
        if applied:
            logger.info("Applied %s database migration(s)", applied)

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection, asserting it's initialized.

        Raises:
            RuntimeError: If database not initialized
        """
        if self._db is None:
            raise RuntimeError("Database not initialized - call initialize() first")
        return self._db

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # Thread ↔ session

    async def set_thread_session(self, thread_id: str, session_id: str) -> None:
        """Bind a thread to a session, replacing any previous binding."""
        await self.conn.execute(
            "INSERT OR REPLACE INTO thread_sessions (thread_id, session_id, created_at) VALUES (?, ?, ?)",
            (thread_id, session_id, _now_iso()),
        )
        await self.conn.commit()

    async def get_thread_session(self, thread_id: str) -> Optional[str]:
        """Return the session bound to a thread, or None."""
        cursor = await self.conn.execute("SELECT session_id FROM thread_sessions WHERE thread_id = ?", (thread_id,))
        row = await cursor.fetchone()
        return str(row["session_id"]) if row else None

    async def get_thread_for_session(self, session_id: str) -> Optional[str]:
        """Return the most recently bound thread for a session, or None."""
        cursor = await self.conn.execute(
            "SELECT thread_id FROM thread_sessions WHERE session_id = ? ORDER BY created_at DESC LIMIT 1",
            (session_id,),
        )
        row = await cursor.fetchone()
        return str(row["thread_id"]) if row else None

    async def delete_thread_session(self, thread_id: str) -> None:
        await self.conn.execute("DELETE FROM thread_sessions WHERE thread_id = ?", (thread_id,))
        await self.conn.commit()

    # Fragment ↔ chat message

    async def record_part_messages(self, records: Iterable[FragmentRecord]) -> int:
        """Insert-or-replace a batch of fragment links in one transaction.

        Rows are applied in iteration order, so a part_id repeated within the
        batch ends up pointing at its last message_id. Either the whole batch
        becomes visible or none of it does.

        Returns:
            Number of records written
        """
        params = [(r.part_id, r.message_id, r.thread_id, _now_iso()) for r in records]
        if not params:
            return 0
        try:
            await self.conn.executemany(
                "INSERT OR REPLACE INTO part_messages (part_id, message_id, thread_id, created_at) VALUES (?, ?, ?, ?)",
                params,
            )
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise
        return len(params)

    async def get_part_id_for_message(self, message_id: str) -> Optional[str]:
        """Return the fragment id displayed by a chat message, or None."""
        cursor = await self.conn.execute(
            "SELECT part_id FROM part_messages WHERE message_id = ? ORDER BY rowid DESC LIMIT 1",
            (message_id,),
        )
        row = await cursor.fetchone()
        return str(row["part_id"]) if row else None

    async def get_part_messages_for_thread(self, thread_id: str) -> list[db_models.PartMessage]:
        cursor = await self.conn.execute(
            "SELECT * FROM part_messages WHERE thread_id = ? ORDER BY rowid ASC",
            (thread_id,),
        )
        rows = await cursor.fetchall()
        return [db_models.PartMessage(**dict(row)) for row in rows]

    # Worktrees

    async def create_pending_worktree(
        self, thread_id: str, worktree_name: str, project_directory: str
    ) -> db_models.ThreadWorktree:
        """Insert a pending worktree row for a thread.

        Raises:
            WorktreeExistsError: If the thread already has a worktree row (delete it first)
        """
        created_at = _now_iso()
        try:
            await self.conn.execute(
                """
                INSERT INTO thread_worktrees (thread_id, worktree_name, project_directory, status, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (thread_id, worktree_name, project_directory, WorktreeStatus.PENDING.value, created_at),
            )
            await self.conn.commit()
        except aiosqlite.IntegrityError as e:
            await self.conn.rollback()
            existing = await self.get_thread_worktree(thread_id)
            raise WorktreeExistsError(thread_id, existing.status if existing else "unknown") from e

        return db_models.ThreadWorktree(
            thread_id=thread_id,
            worktree_name=worktree_name,
            project_directory=project_directory,
            status=WorktreeStatus.PENDING.value,
            created_at=created_at,
        )

    async def set_worktree_ready(self, thread_id: str, worktree_directory: str) -> bool:
        """Transition pending → ready. Returns False if the row was not pending."""
        cursor = await self.conn.execute(
            "UPDATE thread_worktrees SET worktree_directory = ?, status = ? WHERE thread_id = ? AND status = ?",
            (worktree_directory, WorktreeStatus.READY.value, thread_id, WorktreeStatus.PENDING.value),
        )
        await self.conn.commit()
        return cursor.rowcount == 1

    async def set_worktree_error(self, thread_id: str, error_message: str) -> bool:
        """Transition pending → error. Returns False if the row was not pending."""
        cursor = await self.conn.execute(
            "UPDATE thread_worktrees SET status = ?, error_message = ? WHERE thread_id = ? AND status = ?",
            (WorktreeStatus.ERROR.value, error_message, thread_id, WorktreeStatus.PENDING.value),
        )
        await self.conn.commit()
        return cursor.rowcount == 1

    async def get_thread_worktree(self, thread_id: str) -> Optional[db_models.ThreadWorktree]:
        cursor = await self.conn.execute("SELECT * FROM thread_worktrees WHERE thread_id = ?", (thread_id,))
        row = await cursor.fetchone()
        return db_models.ThreadWorktree(**dict(row)) if row else None

    async def delete_thread_worktree(self, thread_id: str) -> bool:
        cursor = await self.conn.execute("DELETE FROM thread_worktrees WHERE thread_id = ?", (thread_id,))
        await self.conn.commit()
        return cursor.rowcount == 1

    # Scheduled messages

    async def create_scheduled_message(
        self,
        channel_id: str,
        prompt: str,
        scheduled_at: datetime,
        created_by: str,
        thread_id: Optional[str] = None,
    ) -> int:
        """Insert a pending schedule and return its id."""
        cursor = await self.conn.execute(
            """
            INSERT INTO scheduled_messages (channel_id, thread_id, prompt, scheduled_at, status, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                channel_id,
                thread_id,
                prompt,
                to_epoch_ms(scheduled_at),
                ScheduleStatus.PENDING.value,
                created_by,
                _now_iso(),
            ),
        )
        await self.conn.commit()
        if cursor.lastrowid is None:
            raise RuntimeError("INSERT into scheduled_messages returned no row id")
        return int(cursor.lastrowid)

    async def get_scheduled_message(self, schedule_id: int) -> Optional[db_models.ScheduledMessage]:
        cursor = await self.conn.execute("SELECT * FROM scheduled_messages WHERE id = ?", (schedule_id,))
        row = await cursor.fetchone()
        return db_models.ScheduledMessage(**dict(row)) if row else None

    async def get_due_schedules(self, now: datetime) -> list[db_models.ScheduledMessage]:
        """Pending schedules whose time has come, oldest first."""
        cursor = await self.conn.execute(
            """
            SELECT * FROM scheduled_messages
            WHERE status = ? AND scheduled_at <= ?
            ORDER BY scheduled_at ASC, id ASC
            """,
            (ScheduleStatus.PENDING.value, to_epoch_ms(now)),
        )
        rows = await cursor.fetchall()
        return [db_models.ScheduledMessage(**dict(row)) for row in rows]

    async def get_schedules_by_channel(
        self, channel_id: str, status: Optional[ScheduleStatus] = ScheduleStatus.PENDING
    ) -> list[db_models.ScheduledMessage]:
        """Schedules targeting a channel or one of its threads (by id).

        Args:
            channel_id: Channel or thread id
            status: Filter by status (None = all)
        """
        query = "SELECT * FROM scheduled_messages WHERE (channel_id = ? OR thread_id = ?)"
        params: list[object] = [channel_id, channel_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY scheduled_at ASC, id ASC"

        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [db_models.ScheduledMessage(**dict(row)) for row in rows]

    async def _finish_schedule(self, schedule_id: int, status: ScheduleStatus, error_message: Optional[str]) -> bool:
        cursor = await self.conn.execute(
            """
            UPDATE scheduled_messages SET status = ?, error_message = ?, finished_at = ?
            WHERE id = ? AND status = ?
            """,
            (status.value, error_message, _now_iso(), schedule_id, ScheduleStatus.PENDING.value),
        )
        await self.conn.commit()
        return cursor.rowcount == 1

    async def complete_schedule(self, schedule_id: int) -> bool:
        """pending → completed. False if the row was no longer pending."""
        return await self._finish_schedule(schedule_id, ScheduleStatus.COMPLETED, None)

    async def fail_schedule(self, schedule_id: int, error_message: str) -> bool:
        """pending → failed with the captured message."""
        return await self._finish_schedule(schedule_id, ScheduleStatus.FAILED, error_message)

    async def cancel_schedule(self, schedule_id: int) -> bool:
        """pending → cancelled. False (and no write) for resolved or unknown rows."""
        return await self._finish_schedule(schedule_id, ScheduleStatus.CANCELLED, None)

    # Channel configuration

    async def set_channel_directory(
        self, channel_id: str, directory: str, channel_type: str, app_id: Optional[str] = None
    ) -> None:
        await self.conn.execute(
            """
            INSERT OR REPLACE INTO channel_directories (channel_id, directory, channel_type, app_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (channel_id, directory, channel_type, app_id, _now_iso()),
        )
        await self.conn.commit()

    async def get_channel_directory(self, channel_id: str) -> Optional[ChannelDirectory]:
        cursor = await self.conn.execute(
            "SELECT directory, channel_type, app_id FROM channel_directories WHERE channel_id = ?",
            (channel_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return ChannelDirectory(directory=row["directory"], channel_type=row["channel_type"], app_id=row["app_id"])

    async def list_channel_directories(self, app_id: Optional[str] = None) -> list[db_models.ChannelDirectory]:
        """List configured channels, optionally for one bot (rows without app_id match any bot)."""
        if app_id is None:
            cursor = await self.conn.execute("SELECT * FROM channel_directories ORDER BY created_at")
        else:
            cursor = await self.conn.execute(
                "SELECT * FROM channel_directories WHERE app_id = ? OR app_id IS NULL ORDER BY created_at",
                (app_id,),
            )
        rows = await cursor.fetchall()
        return [db_models.ChannelDirectory(**dict(row)) for row in rows]

    async def delete_channel_directory(self, channel_id: str) -> None:
        await self.conn.execute("DELETE FROM channel_directories WHERE channel_id = ?", (channel_id,))
        await self.conn.commit()

    async def _get_scalar(self, query: str, params: tuple[object, ...]) -> Optional[object]:
        cursor = await self.conn.execute(query, params)
        row = await cursor.fetchone()
        return row[0] if row else None

    async def get_channel_model(self, channel_id: str) -> Optional[str]:
        """Model id ("provider/model") preferred for a channel."""
        value = await self._get_scalar("SELECT model_id FROM channel_models WHERE channel_id = ?", (channel_id,))
        return str(value) if value else None

    async def set_channel_model(self, channel_id: str, model_id: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO channel_models (channel_id, model_id, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET model_id = excluded.model_id, updated_at = excluded.updated_at
            """,
            (channel_id, model_id, _now_iso()),
        )
        await self.conn.commit()

    async def get_session_model(self, session_id: str) -> Optional[str]:
        value = await self._get_scalar("SELECT model_id FROM session_models WHERE session_id = ?", (session_id,))
        return str(value) if value else None

    async def set_session_model(self, session_id: str, model_id: str) -> None:
        await self.conn.execute(
            "INSERT OR REPLACE INTO session_models (session_id, model_id) VALUES (?, ?)",
            (session_id, model_id),
        )
        await self.conn.commit()

    async def clear_session_model(self, session_id: str) -> None:
        """Drop a session model override so the agent's own model applies."""
        await self.conn.execute("DELETE FROM session_models WHERE session_id = ?", (session_id,))
        await self.conn.commit()

    async def get_channel_agent(self, channel_id: str) -> Optional[str]:
        value = await self._get_scalar("SELECT agent_name FROM channel_agents WHERE channel_id = ?", (channel_id,))
        return str(value) if value else None

    async def set_channel_agent(self, channel_id: str, agent_name: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO channel_agents (channel_id, agent_name, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET agent_name = excluded.agent_name, updated_at = excluded.updated_at
            """,
            (channel_id, agent_name, _now_iso()),
        )
        await self.conn.commit()

    async def get_session_agent(self, session_id: str) -> Optional[str]:
        value = await self._get_scalar("SELECT agent_name FROM session_agents WHERE session_id = ?", (session_id,))
        return str(value) if value else None

    async def set_session_agent(self, session_id: str, agent_name: str) -> None:
        await self.conn.execute(
            "INSERT OR REPLACE INTO session_agents (session_id, agent_name) VALUES (?, ?)",
            (session_id, agent_name),
        )
        await self.conn.commit()

    async def get_channel_verbosity(self, channel_id: str) -> str:
        """Per-channel verbosity, falling back to the configured default."""
        value = await self._get_scalar("SELECT verbosity FROM channel_verbosity WHERE channel_id = ?", (channel_id,))
        return str(value) if value else self.default_verbosity

    async def set_channel_verbosity(self, channel_id: str, verbosity: str) -> None:
        if verbosity not in VERBOSITY_LEVELS:
            raise ValueError(f"Unknown verbosity level: {verbosity}")
        await self.conn.execute(
            """
            INSERT INTO channel_verbosity (channel_id, verbosity, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET verbosity = excluded.verbosity, updated_at = excluded.updated_at
            """,
            (channel_id, verbosity, _now_iso()),
        )
        await self.conn.commit()

    async def get_channel_worktrees_enabled(self, channel_id: str) -> bool:
        """Whether new threads in this channel get a worktree automatically."""
        value = await self._get_scalar("SELECT enabled FROM channel_worktrees WHERE channel_id = ?", (channel_id,))
        return value == 1

    async def set_channel_worktrees_enabled(self, channel_id: str, enabled: bool) -> None:
        await self.conn.execute(
            """
            INSERT INTO channel_worktrees (channel_id, enabled, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET enabled = excluded.enabled, updated_at = excluded.updated_at
            """,
            (channel_id, 1 if enabled else 0, _now_iso()),
        )
        await self.conn.commit()

    async def get_run_config(self, channel_id: str) -> RunConfig:
        """Run notification preferences (defaults when the channel has none)."""
        cursor = await self.conn.execute("SELECT * FROM run_config WHERE channel_id = ?", (channel_id,))
        row = await cursor.fetchone()
        if not row:
            return RunConfig()
        stored = db_models.RunConfigRow(**dict(row))
        return RunConfig(
            notify_chat=bool(stored.notify_chat),
            notify_system=bool(stored.notify_system),
            webhook_url=stored.webhook_url,
        )

    async def set_run_config(self, channel_id: str, run_config: RunConfig) -> None:
        await self.conn.execute(
            """
            INSERT OR REPLACE INTO run_config (channel_id, notify_chat, notify_system, webhook_url, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                channel_id,
                1 if run_config.notify_chat else 0,
                1 if run_config.notify_system else 0,
                run_config.webhook_url,
                _now_iso(),
            ),
        )
        await self.conn.commit()

    async def add_pending_auto_start(self, thread_id: str) -> None:
        """Mark a thread to start a session on its first message."""
        await self.conn.execute("INSERT OR IGNORE INTO pending_auto_start (thread_id) VALUES (?)", (thread_id,))
        await self.conn.commit()

    async def pop_pending_auto_start(self, thread_id: str) -> bool:
        """Consume the auto-start marker; True if one was present."""
        cursor = await self.conn.execute("DELETE FROM pending_auto_start WHERE thread_id = ?", (thread_id,))
        await self.conn.commit()
        return cursor.rowcount == 1

    # Credentials (encrypted at rest)

    async def _read_secret(self, table: str, column: str, app_id: str, stored: Optional[str]) -> Optional[str]:
        """Decrypt a stored secret, repairing legacy plaintext in place.

        Read repair: a value without the ciphertext shape is legacy plaintext.
        It is encrypted and written back (only if the column still holds the
        same value) and the plaintext is returned unchanged this one time.
        """
        if not stored:
            return None

        if not is_encrypted(stored):
            await self.conn.execute(
                f"UPDATE {table} SET {column} = ? WHERE app_id = ? AND {column} = ?",
                (self.vault.seal(stored), app_id, stored),
            )
            await self.conn.commit()
            logger.info("Encrypted legacy plaintext secret", table=table, column=column, app_id=app_id)
            return stored

        return self.vault.open_sealed(stored)

    async def get_bot_token(self, app_id: str) -> Optional[str]:
        """Return the bot token for an app, or None.

        Performs read repair on legacy plaintext tokens (see _read_secret).
        Undecryptable tokens are reported as None.
        """
        cursor = await self.conn.execute("SELECT token FROM bot_tokens WHERE app_id = ?", (app_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._read_secret("bot_tokens", "token", app_id, row["token"])

    async def set_bot_token(self, app_id: str, token: str) -> None:
        if not token:
            raise ValueError("Bot token must not be empty")
        await self.conn.execute(
            "INSERT OR REPLACE INTO bot_tokens (app_id, token, created_at) VALUES (?, ?, ?)",
            (app_id, self.vault.seal(token), _now_iso()),
        )
        await self.conn.commit()

    async def get_first_app_id(self) -> Optional[str]:
        """App id of the earliest stored bot token (single-bot installs)."""
        value = await self._get_scalar("SELECT app_id FROM bot_tokens ORDER BY created_at ASC LIMIT 1", ())
        return str(value) if value else None

    async def get_bot_api_keys(self, app_id: str) -> Optional[BotApiKeys]:
        """Return third-party API keys for an app, or None if none are stored.

        Each key gets the same read repair as get_bot_token.
        """
        cursor = await self.conn.execute(
            "SELECT gemini_api_key, xai_api_key FROM bot_api_keys WHERE app_id = ?",
            (app_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return BotApiKeys(
            gemini_api_key=await self._read_secret("bot_api_keys", "gemini_api_key", app_id, row["gemini_api_key"]),
            xai_api_key=await self._read_secret("bot_api_keys", "xai_api_key", app_id, row["xai_api_key"]),
        )

    async def set_bot_api_keys(self, app_id: str, keys: BotApiKeys) -> None:
        def _seal(value: Optional[str]) -> Optional[str]:
            return self.vault.seal(value) if value else None

        await self.conn.execute(
            "INSERT OR REPLACE INTO bot_api_keys (app_id, gemini_api_key, xai_api_key, created_at) VALUES (?, ?, ?, ?)",
            (app_id, _seal(keys.gemini_api_key), _seal(keys.xai_api_key), _now_iso()),
        )
        await self.conn.commit()

    # Bot settings

    async def get_bot_settings(self, app_id: str) -> BotSettings:
        value = await self._get_scalar("SELECT hub_channel_id FROM bot_settings WHERE app_id = ?", (app_id,))
        return BotSettings(hub_channel_id=str(value) if value else None)

    async def set_bot_settings(self, app_id: str, hub_channel_id: Optional[str]) -> None:
        """Set (or clear, with None) the notification hub channel for an app."""
        await self.conn.execute(
            "INSERT OR REPLACE INTO bot_settings (app_id, hub_channel_id, updated_at) VALUES (?, ?, ?)",
            (app_id, hub_channel_id, _now_iso()),
        )
        await self.conn.commit()
