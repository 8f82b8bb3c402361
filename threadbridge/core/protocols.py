"""Protocol definitions for external collaborators.

The core never talks to the chat platform, the agent server, or git directly.
It depends on these contracts so each can be faked in tests and swapped
without touching the services.
"""

from typing import Optional, Protocol, runtime_checkable

from threadbridge.core.models import AgentFragment, AgentSession, ChannelRef, ChatMessage


@runtime_checkable
class ChatPlatformAdapter(Protocol):
    """Chat platform operations the core needs (channels, threads, messages)."""

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelRef]:
        """Resolve a channel or thread by id.

        Returns:
            ChannelRef, or None if the channel does not exist or is not visible
        """
        ...

    async def create_thread(self, parent_id: str, title: str, starter_message_id: Optional[str] = None) -> ChannelRef:
        """Open a thread in a text channel.

        Args:
            parent_id: Text channel the thread belongs to
            title: Thread name (callers keep it within the platform limit)
            starter_message_id: Message to attach the thread to, if any

        Raises:
            ChatPlatformError: If the thread could not be created
        """
        ...

    async def send_message(self, channel_id: str, content: str) -> ChatMessage:
        """Post a message and return it (with its platform id)."""
        ...

    async def fetch_recent_messages(self, channel_id: str, limit: int) -> list[ChatMessage]:
        """Most recent messages first."""
        ...

    async def rename_thread(self, thread_id: str, title: str) -> None: ...


@runtime_checkable
class AgentServerClient(Protocol):
    """Coding-agent server sessions and prompts.

    Every call that names a session raises SessionNotFoundError when the
    server does not know it, and AgentApiError for any other failure.
    """

    async def create_session(self, directory: str, title: Optional[str] = None) -> AgentSession: ...

    async def get_session(self, session_id: str, directory: Optional[str] = None) -> AgentSession: ...

    async def list_sessions(self, directory: str) -> list[AgentSession]: ...

    async def update_session(self, session_id: str, title: str, directory: Optional[str] = None) -> AgentSession: ...

    async def fork_session(self, session_id: str, message_id: str, directory: Optional[str] = None) -> AgentSession:
        """Fork a session at a message; returns the new session."""
        ...

    async def fetch_messages(self, session_id: str, directory: Optional[str] = None) -> list[AgentFragment]:
        """All fragments of a session, in emission order."""
        ...

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        directory: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> list[AgentFragment]:
        """Send a prompt and wait for the reply fragments, in emission order."""
        ...

    async def abort_session(self, session_id: str, directory: Optional[str] = None) -> bool: ...


@runtime_checkable
class SourceControlAdapter(Protocol):
    """Creates isolated working copies for threads."""

    async def create_worktree(self, project_directory: str, name: str) -> str:
        """Create a worktree and branch named `name`.

        Returns:
            Absolute path of the new worktree directory

        Raises:
            DirectoryNotAccessibleError: Project directory missing
            WorktreeCreateError: Source control refused
        """
        ...
