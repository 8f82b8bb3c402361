"""SQLModel definitions for the threadbridge database schema.

These models mirror the SQLite schema created by core/migrations and are the
row types returned by Db accessors.
"""

from __future__ import annotations

from typing import Optional

from sqlmodel import Field, SQLModel


class ThreadSession(SQLModel, table=True):
    """thread_sessions table."""

    __tablename__ = "thread_sessions"
    __table_args__ = {"extend_existing": True}

    thread_id: str = Field(primary_key=True)
    session_id: str
    created_at: Optional[str] = None


class PartMessage(SQLModel, table=True):
    """part_messages table."""

    __tablename__ = "part_messages"
    __table_args__ = {"extend_existing": True}

    part_id: str = Field(primary_key=True)
    message_id: str
    thread_id: str
    created_at: Optional[str] = None


class ThreadWorktree(SQLModel, table=True):
    """thread_worktrees table."""

    __tablename__ = "thread_worktrees"
    __table_args__ = {"extend_existing": True}

    thread_id: str = Field(primary_key=True)
    worktree_name: str
    worktree_directory: Optional[str] = None
    project_directory: str
    status: str = "pending"
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class ScheduledMessage(SQLModel, table=True):
    """scheduled_messages table. scheduled_at is epoch milliseconds (UTC)."""

    __tablename__ = "scheduled_messages"
    __table_args__ = {"extend_existing": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    channel_id: str
    thread_id: Optional[str] = None
    prompt: str
    scheduled_at: int
    status: str = "pending"
    created_by: str
    created_at: Optional[str] = None
    error_message: Optional[str] = None
    finished_at: Optional[str] = None


class BotToken(SQLModel, table=True):
    """bot_tokens table. token holds iv:tag:ciphertext (or legacy plaintext)."""

    __tablename__ = "bot_tokens"
    __table_args__ = {"extend_existing": True}

    app_id: str = Field(primary_key=True)
    token: str
    created_at: Optional[str] = None


class BotApiKey(SQLModel, table=True):
    """bot_api_keys table."""

    __tablename__ = "bot_api_keys"
    __table_args__ = {"extend_existing": True}

    app_id: str = Field(primary_key=True)
    gemini_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    created_at: Optional[str] = None


class BotSetting(SQLModel, table=True):
    """bot_settings table."""

    __tablename__ = "bot_settings"
    __table_args__ = {"extend_existing": True}

    app_id: str = Field(primary_key=True)
    hub_channel_id: Optional[str] = None
    updated_at: Optional[str] = None


class ChannelDirectory(SQLModel, table=True):
    """channel_directories table."""

    __tablename__ = "channel_directories"
    __table_args__ = {"extend_existing": True}

    channel_id: str = Field(primary_key=True)
    directory: str
    channel_type: str
    app_id: Optional[str] = None
    created_at: Optional[str] = None


class RunConfigRow(SQLModel, table=True):
    """run_config table."""

    __tablename__ = "run_config"
    __table_args__ = {"extend_existing": True}

    channel_id: str = Field(primary_key=True)
    notify_chat: int = 1
    notify_system: int = 1
    webhook_url: Optional[str] = None
    updated_at: Optional[str] = None
