"""Global configuration management.

Config is loaded at module import time and available globally via:
    from threadbridge.config import config

Services take their settings as constructor arguments; this module only
supplies the defaults the daemon and CLI wire in.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from threadbridge.constants import (
    AGENT_DEFAULT_BASE_URL,
    AGENT_REQUEST_TIMEOUT_S,
    SCHEDULER_INTERVAL_S,
    VERBOSITY_LEVELS,
    VERBOSITY_TOOLS_AND_TEXT,
    WORKTREES_DIRNAME,
)

_env_path = os.getenv("THREADBRIDGE_ENV_PATH")
if _env_path:
    load_dotenv(Path(_env_path).expanduser())
else:
    load_dotenv()

DEFAULT_DATA_DIR = Path.home() / ".threadbridge"


@dataclass
class DatabaseConfig:
    _configured_path: str

    @property
    def path(self) -> str:
        """Get database path (lazy-loaded from env var for test compatibility)."""
        env_path = os.getenv("THREADBRIDGE_DB_PATH")
        if env_path:
            return env_path
        return self._configured_path


@dataclass
class SchedulerConfig:
    interval_s: float


@dataclass
class AgentServerConfig:
    """Where the coding-agent server listens."""

    base_url: str
    timeout_s: float


@dataclass
class WorktreeConfig:
    dirname: str


@dataclass
class DefaultsConfig:
    verbosity: str


@dataclass
class Config:
    data_dir: str
    database: DatabaseConfig
    scheduler: SchedulerConfig
    agent: AgentServerConfig
    worktrees: WorktreeConfig
    defaults: DefaultsConfig


def _data_dir() -> Path:
    env_dir = os.getenv("THREADBRIDGE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return DEFAULT_DATA_DIR


# Default configuration values (single source of truth for user-configurable keys)
DEFAULT_CONFIG: dict[str, object] = {
    "database": {
        "path": None,  # <data_dir>/threadbridge.db
    },
    "scheduler": {
        "interval_s": SCHEDULER_INTERVAL_S,
    },
    "agent": {
        "base_url": AGENT_DEFAULT_BASE_URL,
        "timeout_s": AGENT_REQUEST_TIMEOUT_S,
    },
    "worktrees": {
        "dirname": WORKTREES_DIRNAME,
    },
    "defaults": {
        "verbosity": VERBOSITY_TOOLS_AND_TEXT,
    },
}


def expand_env_vars(raw: object) -> object:
    """Recursively replace ${VAR} patterns with environment variable values."""
    if isinstance(raw, dict):
        return {k: expand_env_vars(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [expand_env_vars(item) for item in raw]
    if isinstance(raw, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, raw)
    return raw


def _deep_merge(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    """Deep merge override dict into base dict.

    Args:
        base: Base dictionary with defaults
        override: Dictionary with overrides from user config

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)  # type: ignore[arg-type]
        else:
            result[key] = value
    return result


def build_config(raw: dict[str, Any], data_dir: Path) -> Config:
    """Build typed config from a merged raw dict."""
    verbosity = str(raw["defaults"]["verbosity"])
    if verbosity not in VERBOSITY_LEVELS:
        raise ValueError(f"Invalid defaults.verbosity: {verbosity} (expected one of {', '.join(VERBOSITY_LEVELS)})")

    return Config(
        data_dir=str(data_dir),
        database=DatabaseConfig(_configured_path=str(raw["database"]["path"] or data_dir / "threadbridge.db")),
        scheduler=SchedulerConfig(interval_s=float(raw["scheduler"]["interval_s"])),
        agent=AgentServerConfig(
            base_url=str(raw["agent"]["base_url"]).rstrip("/"),
            timeout_s=float(raw["agent"]["timeout_s"]),
        ),
        worktrees=WorktreeConfig(dirname=str(raw["worktrees"]["dirname"])),
        defaults=DefaultsConfig(verbosity=verbosity),
    )


def load_config(config_path: Path | None = None) -> Config:
    """Load config.yml (optional) merged over DEFAULT_CONFIG.

    Args:
        config_path: Explicit path; defaults to THREADBRIDGE_CONFIG_PATH or <data_dir>/config.yml

    Returns:
        Typed Config
    """
    data_dir = _data_dir()
    if config_path is None:
        env_config = os.getenv("THREADBRIDGE_CONFIG_PATH")
        config_path = Path(env_config).expanduser() if env_config else data_dir / "config.yml"

    user_config: Any = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw_user_config = yaml.safe_load(f)
        if isinstance(raw_user_config, dict):
            user_config = expand_env_vars(raw_user_config)

    if isinstance(user_config, dict) and "data_dir" in user_config:
        data_dir = Path(str(user_config.pop("data_dir"))).expanduser().resolve()

    merged = _deep_merge(DEFAULT_CONFIG, user_config)
    return build_config(merged, data_dir)


config = load_config()
