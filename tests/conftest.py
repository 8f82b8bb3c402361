"""Pytest configuration for threadbridge tests."""

import logging
import os
import tempfile

import pytest
import structlog

# Keep config loading away from the real ~/.threadbridge
os.environ["THREADBRIDGE_DATA_DIR"] = tempfile.mkdtemp(prefix="threadbridge-tests-")
os.environ.pop("THREADBRIDGE_DB_PATH", None)
os.environ.pop("THREADBRIDGE_CONFIG_PATH", None)

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
    cache_logger_on_first_use=False,
)


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=5s, integration=15s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(15))
