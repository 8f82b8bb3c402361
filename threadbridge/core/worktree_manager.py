"""Worktree lifecycle manager.

Each thread has at most one worktree row. The row is written as ``pending``
before any filesystem work starts, then moves to ``ready`` or ``error``
exactly once. Terminal rows never change; deleting the row is the only way
to try again.
"""

import asyncio
import re
from typing import Optional

import structlog

from threadbridge.constants import WORKTREE_NAME_MAX_CHARS
from threadbridge.core.db import Db
from threadbridge.core.db_models import ThreadWorktree
from threadbridge.core.models import WorktreeStatus
from threadbridge.core.protocols import SourceControlAdapter

logger = structlog.get_logger(__name__)


def format_worktree_name(text: str) -> str:
    """Turn free text into a branch-safe worktree name."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:WORKTREE_NAME_MAX_CHARS].rstrip("-")
    return slug or "worktree"


class WorktreeManager:
    """Creates thread worktrees through the source control adapter."""

    def __init__(self, db: Db, source_control: SourceControlAdapter) -> None:
        self.db = db
        self.source_control = source_control
        self._tasks: set[asyncio.Task[None]] = set()

    async def request_worktree(self, thread_id: str, name: str, project_directory: str) -> ThreadWorktree:
        """Record a pending worktree and start creating it in the background.

        Raises:
            WorktreeExistsError: Thread already has a worktree row
        """
        row = await self.db.create_pending_worktree(thread_id, name, project_directory)

        task = asyncio.create_task(self._complete(thread_id, name, project_directory))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        logger.info("Worktree %s requested for thread %s", name, thread_id)
        return row

    async def create_worktree(self, thread_id: str, name: str, project_directory: str) -> ThreadWorktree:
        """Like request_worktree, but waits for the terminal row."""
        await self.db.create_pending_worktree(thread_id, name, project_directory)
        await self._complete(thread_id, name, project_directory)
        row = await self.db.get_thread_worktree(thread_id)
        if row is None:
            # Deleted while creation was in flight
            return ThreadWorktree(
                thread_id=thread_id,
                worktree_name=name,
                project_directory=project_directory,
                status=WorktreeStatus.ERROR.value,
                error_message="Worktree record was deleted during creation",
            )
        return row

    async def _complete(self, thread_id: str, name: str, project_directory: str) -> None:
        try:
            directory = await self.source_control.create_worktree(project_directory, name)
        except Exception as e:  # any adapter failure ends in the error state
            message = str(e) or type(e).__name__
            if await self.db.set_worktree_error(thread_id, message):
                logger.error("Worktree %s for thread %s failed: %s", name, thread_id, message)
            else:
                logger.warning("Worktree %s failed but thread %s row is no longer pending", name, thread_id)
            return

        if await self.db.set_worktree_ready(thread_id, directory):
            logger.info("Worktree %s ready at %s", name, directory)
        else:
            logger.warning("Worktree %s created but thread %s row is no longer pending", name, thread_id)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Worktree creation task crashed", error=str(exc), exc_info=exc)

    async def get_worktree(self, thread_id: str) -> Optional[ThreadWorktree]:
        return await self.db.get_thread_worktree(thread_id)

    async def delete_worktree(self, thread_id: str) -> bool:
        """Forget the thread's worktree record so a new one can be requested.

        The checkout on disk is left alone.
        """
        deleted = await self.db.delete_thread_worktree(thread_id)
        if deleted:
            logger.info("Deleted worktree record for thread %s", thread_id)
        return deleted

    async def resolve_directory(self, thread_id: str, fallback: str) -> str:
        """Ready worktree directory for the thread, else fallback."""
        row = await self.db.get_thread_worktree(thread_id)
        if row and row.status == WorktreeStatus.READY.value and row.worktree_directory:
            return row.worktree_directory
        return fallback

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every background creation to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
