"""Typed errors for threadbridge.

Errors are grouped by category: infrastructure, domain, and security.
Scheduling failures are not raised; the scheduler records them as results.
"""

from __future__ import annotations


class ThreadBridgeError(Exception):
    """Base class for all threadbridge errors."""


class UserSafeError(ThreadBridgeError):
    """Error whose message can be shown verbatim to chat users."""


# Infrastructure errors - agent server, chat platform, filesystem


class DirectoryNotAccessibleError(ThreadBridgeError):
    """Directory does not exist or is not accessible."""

    def __init__(self, directory: str) -> None:
        super().__init__(f"Directory does not exist or is not accessible: {directory}")
        self.directory = directory


class AgentApiError(ThreadBridgeError):
    """Agent server answered with an error status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Agent API error ({status}): {body}")
        self.status = status
        self.body = body


class ChatPlatformError(ThreadBridgeError):
    """Chat platform call failed or returned something unusable."""


class WorktreeCreateError(ThreadBridgeError):
    """Source control adapter could not create a worktree."""


# Domain errors - sessions, fragments, worktrees, schedules


class SessionNotFoundError(UserSafeError):
    def __init__(self, session_id: str | None = None, thread_id: str | None = None) -> None:
        if session_id:
            message = f"Session {session_id} not found"
        else:
            message = f"No session found for thread {thread_id}"
        super().__init__(message)
        self.session_id = session_id
        self.thread_id = thread_id


class FragmentNotFoundError(UserSafeError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} is not linked to a session part")
        self.message_id = message_id


class NoPriorPromptError(UserSafeError):
    def __init__(self, thread_id: str) -> None:
        super().__init__("No previous message to retry")
        self.thread_id = thread_id


class ProjectDirectoryMissingError(UserSafeError):
    def __init__(self, channel_id: str) -> None:
        super().__init__(f"No project directory configured for channel {channel_id}")
        self.channel_id = channel_id


class WorktreeNotFoundError(UserSafeError):
    def __init__(self, thread_id: str) -> None:
        super().__init__(f"No worktree recorded for thread {thread_id}")
        self.thread_id = thread_id


class WorktreeExistsError(UserSafeError):
    def __init__(self, thread_id: str, status: str) -> None:
        super().__init__(f"Thread {thread_id} already has a worktree ({status}); delete it first")
        self.thread_id = thread_id
        self.status = status


class ScheduleNotFoundError(UserSafeError):
    def __init__(self, schedule_id: int) -> None:
        super().__init__(f"Schedule #{schedule_id} not found")
        self.schedule_id = schedule_id


class InvalidScheduleTimeError(UserSafeError):
    """Schedule time could not be parsed or is not in the future."""


# Security errors - credential vault


class EncryptionError(ThreadBridgeError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Encryption operation failed: {reason}")
        self.reason = reason


class DecryptionError(ThreadBridgeError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Decryption operation failed: {reason}")
        self.reason = reason


class CredentialMissingError(UserSafeError):
    def __init__(self, service: str) -> None:
        super().__init__(f"{service} is not configured")
        self.service = service
