"""Session mapper - translates between chat threads and agent sessions.

Also owns the prompt execution path shared by live chat messages, retries,
and the scheduler: resolve the working directory, reuse or create the bound
session, send the prompt, post the reply fragments, and record which chat
message displays which fragment.

Callers must not run two prompts against the same thread concurrently;
this module does not serialize by thread.
"""

from typing import Iterable, Optional

import structlog

from threadbridge.constants import PROMPT_PREVIEW_CHARS, RETRY_LOOKBACK_MESSAGES, THREAD_NAME_MAX_CHARS
from threadbridge.core.dates import preview
from threadbridge.core.db import Db
from threadbridge.core.errors import (
    ChatPlatformError,
    FragmentNotFoundError,
    NoPriorPromptError,
    SessionNotFoundError,
)
from threadbridge.core.models import ChannelRef, ForkResult, FragmentRecord, PromptRun, WorktreeStatus
from threadbridge.core.protocols import AgentServerClient, ChatPlatformAdapter

logger = structlog.get_logger(__name__)


def _thread_title(prefix: str, title: str) -> str:
    return f"{prefix}: {title or 'Untitled'}"[:THREAD_NAME_MAX_CHARS]


class SessionMapper:
    """Binds threads to agent sessions and navigates session history."""

    def __init__(self, db: Db, chat: ChatPlatformAdapter, agent: AgentServerClient) -> None:
        self.db = db
        self.chat = chat
        self.agent = agent

    async def bind_session(self, thread_id: str, session_id: str) -> None:
        """Bind thread to session (last writer wins)."""
        await self.db.set_thread_session(thread_id, session_id)
        logger.debug("Bound thread %s to session %s", thread_id, session_id)

    async def resolve_session(self, thread_id: str) -> str:
        """Return the session bound to a thread.

        Raises:
            SessionNotFoundError: If the thread has no session
        """
        session_id = await self.db.get_thread_session(thread_id)
        if not session_id:
            raise SessionNotFoundError(thread_id=thread_id)
        return session_id

    async def record_fragment(self, part_id: str, message_id: str, thread_id: str) -> None:
        await self.record_fragments([FragmentRecord(part_id=part_id, message_id=message_id, thread_id=thread_id)])

    async def record_fragments(self, records: Iterable[FragmentRecord]) -> int:
        """Record a rendered batch atomically, in emission order."""
        return await self.db.record_part_messages(records)

    async def resolve_fragment(self, message_id: str) -> str:
        """Return the fragment id displayed by a chat message.

        Raises:
            FragmentNotFoundError: If the message is not linked to a fragment
        """
        part_id = await self.db.get_part_id_for_message(message_id)
        if not part_id:
            raise FragmentNotFoundError(message_id)
        return part_id

    async def resolve_working_directory(self, thread_id: str, project_directory: str) -> str:
        """A ready worktree for the thread wins over the channel's project directory."""
        worktree = await self.db.get_thread_worktree(thread_id)
        if worktree and worktree.status == WorktreeStatus.READY.value and worktree.worktree_directory:
            return worktree.worktree_directory
        return project_directory

    async def _ensure_session(self, thread: ChannelRef, prompt: str, directory: str) -> tuple[str, bool]:
        session_id = await self.db.get_thread_session(thread.id)
        if session_id:
            try:
                await self.agent.get_session(session_id, directory=directory)
                return session_id, False
            except SessionNotFoundError:
                logger.warning("Session %s for thread %s no longer exists, starting a new one", session_id, thread.id)

        session = await self.agent.create_session(directory, title=preview(prompt, PROMPT_PREVIEW_CHARS))
        await self.bind_session(thread.id, session.id)
        logger.info("Created session %s for thread %s", session.id, thread.id)
        return session.id, True

    async def _preferences(self, thread: ChannelRef, session_id: str) -> tuple[Optional[str], Optional[str]]:
        model = await self.db.get_session_model(session_id)
        agent_name = await self.db.get_session_agent(session_id)
        channel_id = thread.parent_id or thread.id
        if model is None:
            model = await self.db.get_channel_model(channel_id)
        if agent_name is None:
            agent_name = await self.db.get_channel_agent(channel_id)
        return model, agent_name

    async def run_prompt(self, thread: ChannelRef, prompt: str, project_directory: str) -> PromptRun:
        """Execute a prompt against the thread's session and post the reply.

        Args:
            thread: Thread the prompt belongs to
            prompt: Prompt text
            project_directory: Channel's project directory (a ready worktree overrides it)

        Returns:
            PromptRun with the fragment records written for this reply
        """
        directory = await self.resolve_working_directory(thread.id, project_directory)
        session_id, created = await self._ensure_session(thread, prompt, directory)
        model, agent_name = await self._preferences(thread, session_id)

        fragments = await self.agent.send_prompt(session_id, prompt, directory=directory, model=model, agent=agent_name)

        records: list[FragmentRecord] = []
        for fragment in fragments:
            if not fragment.is_text:
                continue
            message = await self.chat.send_message(thread.id, fragment.text)
            records.append(FragmentRecord(part_id=fragment.id, message_id=message.id, thread_id=thread.id))

        await self.record_fragments(records)
        logger.info(
            "Prompt completed",
            thread_id=thread.id,
            session_id=session_id,
            fragments=len(records),
        )
        return PromptRun(session_id=session_id, thread_id=thread.id, records=records, created_session=created)

    async def find_last_user_prompt(self, thread_id: str) -> Optional[str]:
        messages = await self.chat.fetch_recent_messages(thread_id, RETRY_LOOKBACK_MESSAGES)
        for message in messages:
            if not message.author_is_bot and message.content.strip():
                return message.content
        return None

    async def retry_from_last_user_prompt(self, thread: ChannelRef, project_directory: str) -> PromptRun:
        """Replay the most recent user message against the bound session.

        Raises:
            SessionNotFoundError: Thread has no session
            NoPriorPromptError: No user message in the recent transcript
        """
        await self.resolve_session(thread.id)
        prompt = await self.find_last_user_prompt(thread.id)
        if prompt is None:
            raise NoPriorPromptError(thread.id)

        await self.chat.send_message(thread.id, f'🔄 Retrying: "{preview(prompt, PROMPT_PREVIEW_CHARS)}"')
        return await self.run_prompt(thread, prompt, project_directory)

    async def fork_from(self, thread: ChannelRef, message_id: str, project_directory: str) -> ForkResult:
        """Fork the thread's session at the fragment shown by message_id into a new thread.

        Everything that can fail is resolved before the new thread is
        created, so a failed fork leaves no thread behind.
        The fork runs in the channel project directory, not a thread worktree.

        Raises:
            ChatPlatformError: Thread has no parent channel
            SessionNotFoundError: Thread has no session
            FragmentNotFoundError: Message is not linked to a fragment
            AgentApiError: Agent server refused the fork
        """
        if not thread.parent_id:
            raise ChatPlatformError(f"Thread {thread.id} has no parent channel")

        session_id = await self.resolve_session(thread.id)
        part_id = await self.resolve_fragment(message_id)
        forked = await self.agent.fork_session(session_id, part_id, directory=project_directory)
        title = forked.title or "Untitled"

        new_thread = await self.chat.create_thread(thread.parent_id, _thread_title("Fork", title))
        await self.bind_session(new_thread.id, forked.id)

        logger.info("Forked session %s to %s in thread %s", session_id, forked.id, new_thread.id)
        return ForkResult(thread=new_thread, session_id=forked.id, title=title)

    async def resume_session(self, channel: ChannelRef, session_id: str, project_directory: str) -> ForkResult:
        """Open a new thread bound to an existing agent session."""
        parent_id = channel.parent_id if channel.is_thread else channel.id
        if not parent_id:
            raise ChatPlatformError(f"Thread {channel.id} has no parent channel")

        session = await self.agent.get_session(session_id, directory=project_directory)
        new_thread = await self.chat.create_thread(parent_id, _thread_title("Resume", session.title))
        await self.bind_session(new_thread.id, session.id)

        logger.info("Resumed session %s in thread %s", session.id, new_thread.id)
        return ForkResult(thread=new_thread, session_id=session.id, title=session.title or "Untitled")

    async def rename_session(self, thread: ChannelRef, title: str, project_directory: str) -> None:
        """Rename the agent session and the thread displaying it."""
        session_id = await self.resolve_session(thread.id)
        directory = await self.resolve_working_directory(thread.id, project_directory)
        await self.agent.update_session(session_id, title, directory=directory)
        await self.chat.rename_thread(thread.id, title[:THREAD_NAME_MAX_CHARS])

    async def abort_session(self, thread: ChannelRef, project_directory: str) -> bool:
        """Abort whatever the thread's session is currently running."""
        session_id = await self.resolve_session(thread.id)
        directory = await self.resolve_working_directory(thread.id, project_directory)
        aborted = await self.agent.abort_session(session_id, directory=directory)
        if aborted:
            logger.info("Aborted session %s", session_id)
        return aborted
