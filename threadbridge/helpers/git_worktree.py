"""Git worktree creation via GitPython."""

import asyncio
from pathlib import Path

import structlog
from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from threadbridge.constants import WORKTREES_DIRNAME
from threadbridge.core.errors import DirectoryNotAccessibleError, WorktreeCreateError

logger = structlog.get_logger(__name__)

GIT_TIMEOUT_S = 120.0


def _git_error_text(exc: GitCommandError) -> str:
    stderr = str(exc.stderr or "").strip()
    # GitPython wraps stderr as "stderr: '...'"
    if stderr.startswith("stderr:"):
        stderr = stderr[len("stderr:") :].strip().strip("'").strip()
    return stderr or str(exc)


class GitWorktreeAdapter:
    """Creates ``<project>/<dirname>/<name>`` on a new branch ``<name>``."""

    def __init__(self, dirname: str = WORKTREES_DIRNAME) -> None:
        self.dirname = dirname

    def worktree_path(self, project_directory: str, name: str) -> Path:
        return Path(project_directory) / self.dirname / name

    def _add_worktree(self, project_directory: str, name: str) -> str:
        try:
            repo = Repo(project_directory)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise WorktreeCreateError(f"Cannot create worktree: {project_directory} is not a git repository") from exc

        target = self.worktree_path(project_directory, name)
        target.parent.mkdir(parents=True, exist_ok=True)

        try:
            repo.git.worktree("add", "-b", name, str(target), kill_after_timeout=GIT_TIMEOUT_S)
        except GitCommandError as exc:
            raise WorktreeCreateError(_git_error_text(exc)) from exc
        finally:
            repo.close()

        logger.info("Created worktree at %s", target)
        return str(target.resolve())

    async def create_worktree(self, project_directory: str, name: str) -> str:
        """Run ``git worktree add -b <name> <path>`` in the project directory.

        Returns:
            Absolute worktree directory

        Raises:
            DirectoryNotAccessibleError: Project directory missing
            WorktreeCreateError: Not a repository, or git failed
        """
        if not Path(project_directory).is_dir():
            raise DirectoryNotAccessibleError(project_directory)

        logger.info("Creating git worktree %s in %s", name, project_directory)
        return await asyncio.to_thread(self._add_worktree, project_directory, name)
