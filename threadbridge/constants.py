"""Constants used across threadbridge.

This module defines shared constants to ensure consistency.
"""

# Identifies this application in the machine fingerprint used for key derivation
APP_IDENTIFIER = "dev.threadbridge.chat"

# Scheduler
SCHEDULER_INTERVAL_S = 10.0

# Chat platform limits
THREAD_NAME_MAX_CHARS = 100
RETRY_LOOKBACK_MESSAGES = 20

# Preview lengths for user-facing summaries of prompts
PROMPT_PREVIEW_CHARS = 50
STARTER_PREVIEW_CHARS = 100
LIST_PREVIEW_CHARS = 40

# Agent server HTTP client
AGENT_DEFAULT_BASE_URL = "http://127.0.0.1:4096"
AGENT_REQUEST_TIMEOUT_S = 300.0

# Worktrees live under <project>/<WORKTREES_DIRNAME>/<name>
WORKTREES_DIRNAME = ".worktrees"
WORKTREE_NAME_MAX_CHARS = 50

# Output verbosity levels
VERBOSITY_TOOLS_AND_TEXT = "tools-and-text"
VERBOSITY_ESSENTIAL_TOOLS = "text-and-essential-tools"
VERBOSITY_TEXT_ONLY = "text-only"
VERBOSITY_LEVELS = (VERBOSITY_TOOLS_AND_TEXT, VERBOSITY_ESSENTIAL_TOOLS, VERBOSITY_TEXT_ONLY)
