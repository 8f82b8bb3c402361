"""Service wiring - one ThreadBridge object per process.

Owns the store, credential vault, agent client and the core services. The
chat platform adapter is supplied by the embedding bot.
"""

from pathlib import Path
from typing import Optional

import structlog

from threadbridge.agent.client import AgentServerHttpClient
from threadbridge.config import Config
from threadbridge.core.db import Db
from threadbridge.core.errors import CredentialMissingError
from threadbridge.core.protocols import AgentServerClient, ChatPlatformAdapter, SourceControlAdapter
from threadbridge.core.scheduler import Scheduler
from threadbridge.core.security import CredentialVault
from threadbridge.core.session_mapper import SessionMapper
from threadbridge.core.worktree_manager import WorktreeManager
from threadbridge.helpers.git_worktree import GitWorktreeAdapter

logger = structlog.get_logger(__name__)


class ThreadBridge:
    """Explicit lifecycle for every long-lived threadbridge resource."""

    def __init__(
        self,
        config: Config,
        chat: ChatPlatformAdapter,
        app_id: Optional[str] = None,
        agent: Optional[AgentServerClient] = None,
        source_control: Optional[SourceControlAdapter] = None,
    ) -> None:
        self.config = config
        self.chat = chat
        self.app_id = app_id
        self.vault = CredentialVault(Path(config.data_dir))
        self.db = Db(config.database.path, vault=self.vault, default_verbosity=config.defaults.verbosity)
        self.agent = agent or AgentServerHttpClient(config.agent.base_url, timeout_s=config.agent.timeout_s)
        self.mapper = SessionMapper(self.db, chat, self.agent)
        self.worktrees = WorktreeManager(self.db, source_control or GitWorktreeAdapter(config.worktrees.dirname))
        self.scheduler = Scheduler(self.db, chat, self.mapper, app_id=app_id, interval_s=config.scheduler.interval_s)
        self._started = False

    async def start(self) -> None:
        """Open the store and start the scheduler."""
        if self._started:
            return
        await self.db.initialize()
        await self.scheduler.start()
        self._started = True
        logger.info("threadbridge started", app_id=self.app_id, db_path=self.db.db_path)

    async def bot_token(self) -> str:
        """Decrypted bot token for this app (or the first stored one).

        Raises:
            CredentialMissingError: No usable token is stored
        """
        app_id = self.app_id or await self.db.get_first_app_id()
        token = await self.db.get_bot_token(app_id) if app_id else None
        if not token:
            raise CredentialMissingError("Bot token")
        return token

    async def stop(self) -> None:
        """Stop new scheduler ticks and let background worktree creation finish."""
        await self.scheduler.stop()
        await self.worktrees.wait_idle()

    async def close(self) -> None:
        await self.stop()
        if isinstance(self.agent, AgentServerHttpClient):
            await self.agent.close()
        await self.db.close()
        self.vault.clear_key_cache()
        self._started = False
        logger.info("threadbridge closed")
