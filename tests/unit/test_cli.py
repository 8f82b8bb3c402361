"""Unit tests for the operator CLI."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from threadbridge.cli import main
from threadbridge.config import config
from threadbridge.core.db import Db
from threadbridge.core.security import CredentialVault

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr("threadbridge.cli.setup_logging", lambda: None)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def _with_db(db_path, action):
    async def run():
        db = Db(db_path, vault=CredentialVault(config.data_dir))
        await db.initialize()
        try:
            return await action(db)
        finally:
            await db.close()

    return asyncio.run(run())


def test_migrate(db_path, capsys):
    assert main(["--db", db_path, "migrate"]) == 0
    assert "up to date" in capsys.readouterr().out


def test_set_and_show_hub(db_path, capsys):
    assert main(["--db", db_path, "set-hub", "app-1", "hub-42"]) == 0
    assert main(["--db", db_path, "set-hub", "app-1"]) == 0
    assert capsys.readouterr().out.strip().endswith("hub-42")

    assert main(["--db", db_path, "set-hub", "app-1", "--clear"]) == 0
    assert _with_db(db_path, lambda db: db.get_bot_settings("app-1")).hub_channel_id is None


def test_set_token_from_env(db_path, monkeypatch):
    monkeypatch.setenv("THREADBRIDGE_BOT_TOKEN", "MTIz.secret")
    assert main(["--db", db_path, "set-token", "app-1"]) == 0
    assert _with_db(db_path, lambda db: db.get_bot_token("app-1")) == "MTIz.secret"


def test_schedules_and_cancel(db_path, capsys):
    when = datetime.now(timezone.utc) + timedelta(hours=1)
    schedule_id = _with_db(db_path, lambda db: db.create_scheduled_message("chan-1", "Run tests", when, "u1"))

    assert main(["--db", db_path, "schedules", "chan-1"]) == 0
    out = capsys.readouterr().out
    assert f"#{schedule_id} " in out
    assert "Run tests" in out

    assert main(["--db", db_path, "cancel", str(schedule_id), "--user", "ops"]) == 0
    assert main(["--db", db_path, "cancel", str(schedule_id)]) == 1

    capsys.readouterr()
    assert main(["--db", db_path, "schedules", "chan-1"]) == 0
    assert "No scheduled messages" in capsys.readouterr().out
    assert main(["--db", db_path, "schedules", "chan-1", "--all"]) == 0
    assert "[cancelled]" in capsys.readouterr().out


def test_worktree(db_path, capsys):
    assert main(["--db", db_path, "worktree", "t1"]) == 1

    async def seed(db):
        await db.create_pending_worktree("t1", "fix-bug", "/proj")
        await db.set_worktree_error("t1", "branch exists")

    _with_db(db_path, seed)
    capsys.readouterr()

    assert main(["--db", db_path, "worktree", "t1"]) == 0
    out = capsys.readouterr().out
    assert "error" in out
    assert "branch exists" in out

    assert main(["--db", db_path, "worktree", "t1", "--delete"]) == 0
    assert _with_db(db_path, lambda db: db.get_thread_worktree("t1")) is None


def test_cancel_unknown_schedule(db_path, capsys):
    assert main(["--db", db_path, "cancel", "999"]) == 1
    assert "Schedule #999 not found" in capsys.readouterr().err
