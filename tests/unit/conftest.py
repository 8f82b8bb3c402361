"""Shared fixtures and fake collaborators for unit tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from threadbridge.core.db import Db
from threadbridge.core.errors import ChatPlatformError, SessionNotFoundError
from threadbridge.core.models import AgentFragment, AgentSession, ChannelKind, ChannelRef, ChatMessage
from threadbridge.core.security import CredentialVault


class FakeChat:
    """In-memory chat platform."""

    def __init__(self) -> None:
        self.channels: dict[str, ChannelRef] = {}
        self.sent: list[ChatMessage] = []
        self.threads_created: list[ChannelRef] = []
        self.history: dict[str, list[ChatMessage]] = {}
        self.renamed: list[tuple[str, str]] = []
        self.fail_send_to: set[str] = set()
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    def add_channel(
        self, channel_id: str, kind: ChannelKind = ChannelKind.TEXT, parent_id: Optional[str] = None
    ) -> ChannelRef:
        channel = ChannelRef(id=channel_id, kind=kind, name=channel_id, parent_id=parent_id)
        self.channels[channel_id] = channel
        return channel

    def messages_to(self, channel_id: str) -> list[str]:
        return [m.content for m in self.sent if m.channel_id == channel_id]

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelRef]:
        return self.channels.get(channel_id)

    async def create_thread(self, parent_id: str, title: str, starter_message_id: Optional[str] = None) -> ChannelRef:
        thread = ChannelRef(id=self._next_id("thread-"), kind=ChannelKind.THREAD, name=title, parent_id=parent_id)
        self.channels[thread.id] = thread
        self.threads_created.append(thread)
        return thread

    async def send_message(self, channel_id: str, content: str) -> ChatMessage:
        if channel_id in self.fail_send_to:
            raise ChatPlatformError(f"cannot send to {channel_id}")
        message = ChatMessage(
            id=self._next_id("msg-"), channel_id=channel_id, content=content, author_id="bot", author_is_bot=True
        )
        self.sent.append(message)
        return message

    async def fetch_recent_messages(self, channel_id: str, limit: int) -> list[ChatMessage]:
        return list(self.history.get(channel_id, []))[:limit]

    async def rename_thread(self, thread_id: str, title: str) -> None:
        self.renamed.append((thread_id, title))


class FakeAgent:
    """In-memory agent server."""

    def __init__(self) -> None:
        self.sessions: dict[str, AgentSession] = {}
        self.prompts: list[dict[str, Optional[str]]] = []
        self.forks: list[tuple[str, str]] = []
        self.fork_directories: list[Optional[str]] = []
        self.reply: list[AgentFragment] = [
            AgentFragment(id="part-tool", message_id="am-1", type="tool", text=""),
            AgentFragment(id="part-text", message_id="am-1", type="text", text="All tests pass"),
        ]
        self.fail_prompt: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self._counter = 0

    def add_session(self, session_id: str, title: str = "") -> AgentSession:
        session = AgentSession(id=session_id, title=title)
        self.sessions[session_id] = session
        return session

    def _get(self, session_id: str) -> AgentSession:
        if session_id not in self.sessions:
            raise SessionNotFoundError(session_id=session_id)
        return self.sessions[session_id]

    async def create_session(self, directory: str, title: Optional[str] = None) -> AgentSession:
        self._counter += 1
        session = AgentSession(id=f"ses-{self._counter}", title=title or "", directory=directory)
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str, directory: Optional[str] = None) -> AgentSession:
        return self._get(session_id)

    async def list_sessions(self, directory: str) -> list[AgentSession]:
        return list(self.sessions.values())

    async def update_session(self, session_id: str, title: str, directory: Optional[str] = None) -> AgentSession:
        session = self._get(session_id)
        updated = AgentSession(id=session.id, title=title, directory=session.directory)
        self.sessions[session_id] = updated
        return updated

    async def fork_session(self, session_id: str, message_id: str, directory: Optional[str] = None) -> AgentSession:
        source = self._get(session_id)
        self.forks.append((session_id, message_id))
        self.fork_directories.append(directory)
        return self.add_session(f"{session_id}-fork", title=source.title)

    async def fetch_messages(self, session_id: str, directory: Optional[str] = None) -> list[AgentFragment]:
        self._get(session_id)
        return list(self.reply)

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        directory: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> list[AgentFragment]:
        self._get(session_id)
        self.prompts.append(
            {"session_id": session_id, "text": text, "directory": directory, "model": model, "agent": agent}
        )
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_prompt is not None:
            raise self.fail_prompt
        return list(self.reply)

    async def abort_session(self, session_id: str, directory: Optional[str] = None) -> bool:
        self._get(session_id)
        return True


class FakeClock:
    """Settable UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(tmp_path)


@pytest.fixture
async def db(tmp_path, vault):
    """Initialized database in a temp directory."""
    test_db = Db(str(tmp_path / "test.db"), vault=vault)
    await test_db.initialize()
    yield test_db
    await test_db.close()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def clock():
    return FakeClock()
