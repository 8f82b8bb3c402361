"""threadbridge logging configuration.

All modules log through structlog (`structlog.get_logger(__name__)`). Messages
are either short sentences with `%s` positional arguments or event strings
with keyword fields; both render through the same processor chain.

Secrets (bot tokens, API keys, ciphertext) must never be passed to a logger.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog

LOG_LEVEL_ENV = "THREADBRIDGE_LOG_LEVEL"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structlog for the process.

    Args:
        level: Optional override for `THREADBRIDGE_LOG_LEVEL` (default INFO).
    """
    level_name = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer: structlog.types.Processor
    if sys.stderr.isatty():
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
