"""Operator CLI for threadbridge state.

Usage:
    threadbridge schedules <channel_id> [--all]
    threadbridge cancel <schedule_id> [--user NAME]
    threadbridge set-token <app_id>            (token from THREADBRIDGE_BOT_TOKEN or stdin)
    threadbridge set-hub <app_id> [<channel_id> | --clear]
    threadbridge worktree <thread_id> [--delete]
    threadbridge migrate
"""

import argparse
import asyncio
import getpass
import os
import sys
from typing import Awaitable, Callable, Optional

import structlog

from threadbridge.config import config
from threadbridge.core.db import Db
from threadbridge.core.errors import ScheduleNotFoundError, UserSafeError, WorktreeNotFoundError
from threadbridge.core.models import ScheduleStatus
from threadbridge.core.scheduler import format_schedule_line
from threadbridge.core.security import CredentialVault
from threadbridge.logging_config import setup_logging

logger = structlog.get_logger(__name__)

TOKEN_ENV_VAR = "THREADBRIDGE_BOT_TOKEN"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="threadbridge", description="Inspect and manage threadbridge state.")
    parser.add_argument("--db", default=None, help="Database path (default: configured path)")
    sub = parser.add_subparsers(dest="command", required=True)

    schedules = sub.add_parser("schedules", help="List schedules for a channel or thread")
    schedules.add_argument("channel_id")
    schedules.add_argument("--all", action="store_true", help="Include resolved schedules")

    cancel = sub.add_parser("cancel", help="Cancel a pending schedule")
    cancel.add_argument("schedule_id", type=int)
    cancel.add_argument("--user", default=None, help="Who is cancelling (default: current user)")

    set_token = sub.add_parser("set-token", help="Store an encrypted bot token")
    set_token.add_argument("app_id")

    set_hub = sub.add_parser("set-hub", help="Set the schedule notification hub channel")
    set_hub.add_argument("app_id")
    set_hub.add_argument("channel_id", nargs="?")
    set_hub.add_argument("--clear", action="store_true")

    worktree = sub.add_parser("worktree", help="Show (or delete) a thread's worktree record")
    worktree.add_argument("thread_id")
    worktree.add_argument("--delete", action="store_true")

    sub.add_parser("migrate", help="Apply pending database migrations")
    return parser


async def _cmd_schedules(db: Db, args: argparse.Namespace) -> int:
    rows = await db.get_schedules_by_channel(args.channel_id, status=None if args.all else ScheduleStatus.PENDING)
    if not rows:
        print("No scheduled messages")
        return 0
    for row in rows:
        print(format_schedule_line(row))
    return 0


async def _cmd_cancel(db: Db, args: argparse.Namespace) -> int:
    user = args.user or getpass.getuser()
    if not await db.cancel_schedule(args.schedule_id):
        if await db.get_scheduled_message(args.schedule_id) is None:
            raise ScheduleNotFoundError(args.schedule_id)
        print(f"Schedule #{args.schedule_id} is not pending", file=sys.stderr)
        return 1
    logger.info("Schedule #%s cancelled by %s", args.schedule_id, user)
    print(f"Cancelled schedule #{args.schedule_id}")
    return 0


def _read_token() -> Optional[str]:
    token = os.getenv(TOKEN_ENV_VAR)
    if token:
        return token.strip()
    if sys.stdin.isatty():
        return getpass.getpass("Bot token: ").strip() or None
    return sys.stdin.readline().strip() or None


async def _cmd_set_token(db: Db, args: argparse.Namespace) -> int:
    token = _read_token()
    if not token:
        print(f"No token given (set {TOKEN_ENV_VAR} or pipe it on stdin)", file=sys.stderr)
        return 1
    await db.set_bot_token(args.app_id, token)
    print(f"Stored encrypted token for {args.app_id}")
    return 0


async def _cmd_set_hub(db: Db, args: argparse.Namespace) -> int:
    if args.clear:
        await db.set_bot_settings(args.app_id, None)
        print(f"Cleared hub channel for {args.app_id}")
        return 0
    if not args.channel_id:
        settings = await db.get_bot_settings(args.app_id)
        print(settings.hub_channel_id or "No hub channel configured")
        return 0
    await db.set_bot_settings(args.app_id, args.channel_id)
    print(f"Hub channel for {args.app_id} set to {args.channel_id}")
    return 0


async def _cmd_worktree(db: Db, args: argparse.Namespace) -> int:
    row = await db.get_thread_worktree(args.thread_id)
    if row is None:
        raise WorktreeNotFoundError(args.thread_id)
    if args.delete:
        await db.delete_thread_worktree(args.thread_id)
        print(f"Deleted worktree record {row.worktree_name} ({row.status})")
        return 0

    print(f"name:      {row.worktree_name}")
    print(f"status:    {row.status}")
    print(f"project:   {row.project_directory}")
    if row.worktree_directory:
        print(f"directory: {row.worktree_directory}")
    if row.error_message:
        print(f"error:     {row.error_message}")
    return 0


async def _cmd_migrate(db: Db, args: argparse.Namespace) -> int:
    print(f"Database at {db.db_path} is up to date")
    return 0


_COMMANDS: dict[str, Callable[[Db, argparse.Namespace], Awaitable[int]]] = {
    "schedules": _cmd_schedules,
    "cancel": _cmd_cancel,
    "set-token": _cmd_set_token,
    "set-hub": _cmd_set_hub,
    "worktree": _cmd_worktree,
    "migrate": _cmd_migrate,
}


async def _run(args: argparse.Namespace) -> int:
    db = Db(
        args.db or config.database.path,
        vault=CredentialVault(config.data_dir),
        default_verbosity=config.defaults.verbosity,
    )
    await db.initialize()
    try:
        return await _COMMANDS[args.command](db, args)
    finally:
        await db.close()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    try:
        return asyncio.run(_run(args))
    except UserSafeError as e:
        print(str(e), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
