"""Data models shared by the threadbridge core."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class WorktreeStatus(str, Enum):
    """Lifecycle of a thread worktree row. Only pending is non-terminal."""

    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


class ScheduleStatus(str, Enum):
    """Lifecycle of a scheduled message. Only pending is non-terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChannelKind(str, Enum):
    """Chat channel kinds the core knows how to target."""

    TEXT = "text"
    THREAD = "thread"
    OTHER = "other"


@dataclass(frozen=True)
class ChannelRef:
    """A chat channel or thread as seen through the chat platform adapter."""

    id: str
    kind: ChannelKind
    name: str = ""
    parent_id: Optional[str] = None

    @property
    def is_thread(self) -> bool:
        return self.kind is ChannelKind.THREAD


@dataclass(frozen=True)
class ChatMessage:
    """A message fetched from or posted to the chat platform."""

    id: str
    channel_id: str
    content: str = ""
    author_id: str = ""
    author_is_bot: bool = False


@dataclass(frozen=True)
class AgentSession:
    """Agent server session summary."""

    id: str
    title: str = ""
    directory: Optional[str] = None
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class AgentFragment:
    """One unit of agent output (text, tool call, reasoning)."""

    id: str
    message_id: str
    type: str
    text: str = ""

    @property
    def is_text(self) -> bool:
        return self.type == "text" and bool(self.text.strip())


@dataclass(frozen=True)
class FragmentRecord:
    """Link between an agent fragment and the chat message that displays it."""

    part_id: str
    message_id: str
    thread_id: str


@dataclass(frozen=True)
class ForkResult:
    """Outcome of forking a session into a new thread."""

    thread: ChannelRef
    session_id: str
    title: str


@dataclass(frozen=True)
class PromptRun:
    """Outcome of one prompt execution against a thread."""

    session_id: str
    thread_id: str
    records: list[FragmentRecord] = field(default_factory=list)
    created_session: bool = False


@dataclass(frozen=True)
class ScheduleResult:
    """Per-row scheduler outcome. `error` is set iff `ok` is False."""

    schedule_id: int
    ok: bool
    error: Optional[str] = None

    @property
    def status(self) -> ScheduleStatus:
        return ScheduleStatus.COMPLETED if self.ok else ScheduleStatus.FAILED


@dataclass
class RunConfig:
    """Per-channel run notification preferences."""

    notify_chat: bool = True
    notify_system: bool = True
    webhook_url: Optional[str] = None


@dataclass(frozen=True)
class ChannelDirectory:
    directory: str
    channel_type: str
    app_id: Optional[str] = None


@dataclass(frozen=True)
class BotApiKeys:
    gemini_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None


@dataclass(frozen=True)
class BotSettings:
    hub_channel_id: Optional[str] = None
