"""Scheduler service - runs scheduled prompts once their time has come.

A single periodic tick picks up pending rows whose ``scheduled_at`` has
passed and executes each one through the Session Mapper. Every row ends in
exactly one terminal state; a failure in one row never affects the others.

Only one Scheduler may run against a database at a time.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

import structlog

from threadbridge.constants import (
    LIST_PREVIEW_CHARS,
    PROMPT_PREVIEW_CHARS,
    SCHEDULER_INTERVAL_S,
    STARTER_PREVIEW_CHARS,
)
from threadbridge.core.dates import (
    ensure_utc,
    format_schedule_time,
    from_epoch_ms,
    parse_time_input,
    preview,
    utc_now,
)
from threadbridge.core.db import Db
from threadbridge.core.db_models import ScheduledMessage
from threadbridge.core.errors import (
    ChatPlatformError,
    InvalidScheduleTimeError,
    ProjectDirectoryMissingError,
)
from threadbridge.core.models import ChannelKind, ChannelRef, ScheduleResult, ScheduleStatus
from threadbridge.core.protocols import ChatPlatformAdapter
from threadbridge.core.session_mapper import SessionMapper

logger = structlog.get_logger(__name__)


def format_schedule_line(row: ScheduledMessage, now: Optional[datetime] = None) -> str:
    """One-line listing entry: id, time, target and prompt preview."""
    when = format_schedule_time(from_epoch_ms(row.scheduled_at), now)
    target = row.thread_id or row.channel_id
    return f"#{row.id} {when} [{row.status}] {target}: {preview(row.prompt, LIST_PREVIEW_CHARS)}"


class Scheduler:
    """Periodic executor for scheduled prompts.

    start() and stop() only gate new ticks; a tick that is already running
    always completes.
    """

    def __init__(
        self,
        db: Db,
        chat: ChatPlatformAdapter,
        mapper: SessionMapper,
        app_id: Optional[str] = None,
        interval_s: float = SCHEDULER_INTERVAL_S,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.chat = chat
        self.mapper = mapper
        self.app_id = app_id
        self.interval_s = interval_s
        self._clock = clock
        self._running = False
        self._in_flight = False
        self._loop_task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # Schedule management

    async def create_schedule(
        self,
        channel_id: str,
        prompt: str,
        scheduled_at: datetime,
        created_by: str,
        thread_id: Optional[str] = None,
    ) -> ScheduledMessage:
        """Store a new pending schedule.

        Raises:
            InvalidScheduleTimeError: scheduled_at is not in the future
        """
        if ensure_utc(scheduled_at) <= self._clock():
            raise InvalidScheduleTimeError("Scheduled time must be in the future")

        schedule_id = await self.db.create_scheduled_message(
            channel_id, prompt, scheduled_at, created_by, thread_id=thread_id
        )
        row = await self.db.get_scheduled_message(schedule_id)
        if row is None:
            raise RuntimeError(f"Schedule #{schedule_id} vanished after insert")

        logger.info("Created schedule #%s for %s", schedule_id, format_schedule_time(scheduled_at, self._clock()))
        return row

    async def create_schedule_from_input(
        self,
        channel_id: str,
        time_text: str,
        prompt: str,
        created_by: str,
        thread_id: Optional[str] = None,
    ) -> ScheduledMessage:
        """Parse a user-supplied time (``30m``, ``14:30``) and store the schedule."""
        scheduled_at = parse_time_input(time_text, self._clock())
        if scheduled_at is None:
            raise InvalidScheduleTimeError(
                f"Invalid time format: {time_text}. Use e.g. 30s, 10m, 2h, 1d, 14:30 or 3:00pm"
            )
        return await self.create_schedule(channel_id, prompt, scheduled_at, created_by, thread_id=thread_id)

    async def list_schedules(self, channel_id: str) -> list[ScheduledMessage]:
        """Pending schedules for a channel or thread."""
        return await self.db.get_schedules_by_channel(channel_id)

    async def cancel_schedule(self, schedule_id: int, requesting_user: str) -> bool:
        """Cancel a pending schedule. False (row untouched) if it is not pending."""
        cancelled = await self.db.cancel_schedule(schedule_id)
        if cancelled:
            logger.info("Schedule #%s cancelled by %s", schedule_id, requesting_user)
        else:
            logger.info("Schedule #%s not cancellable (not pending or unknown)", schedule_id)
        return cancelled

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started (checking every %ss)", self.interval_s)

    async def stop(self) -> None:
        """Stop scheduling new ticks; waits for an in-flight tick to finish."""
        self._running = False
        task, self._loop_task = self._loop_task, None
        if task is None:
            return

        if self._in_flight:
            # Loop exits on its own once the current tick completes
            await task
        else:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler stopped")

    async def close(self) -> None:
        await self.stop()

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_s)
            if not self._running:
                break
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed: %s", e, exc_info=True)

    # Execution

    async def tick(self) -> list[ScheduleResult]:
        """Process every due schedule once.

        Returns an empty list without touching the database if another tick
        is still running.
        """
        if self._in_flight:
            logger.debug("Previous scheduler tick still running, skipping")
            return []

        self._in_flight = True
        try:
            due = await self.db.get_due_schedules(self._clock())
            results: list[ScheduleResult] = []
            for row in due:
                result = await self._process(row)
                if result is not None:
                    results.append(result)
            return results
        finally:
            self._in_flight = False

    async def _process(self, row: ScheduledMessage) -> Optional[ScheduleResult]:
        """Execute, record and announce one due row.

        Returns None when the row was resolved elsewhere before it ran or when
        its bookkeeping failed before execution.
        """
        try:
            current = await self.db.get_scheduled_message(row.id) if row.id is not None else None
        except Exception as e:
            logger.error("Could not re-read schedule #%s: %s", row.id, e)
            return None
        if current is None or current.status != ScheduleStatus.PENDING.value:
            logger.info("Skipping schedule #%s, no longer pending", row.id)
            return None

        result = await self.execute_one(current)

        try:
            recorded = await self._record(current, result)
        except Exception as e:
            logger.error("Could not record outcome of schedule #%s: %s", current.id, e, exc_info=True)
            return result

        if recorded:
            await self._notify(current, result)
        return result

    async def execute_one(self, row: ScheduledMessage) -> ScheduleResult:
        """Run one schedule. Never raises; failures become the result's error."""
        schedule_id = row.id if row.id is not None else -1
        logger.info("Processing schedule #%s", schedule_id)
        try:
            await self._execute(row)
        except Exception as e:  # row isolation
            message = str(e) or type(e).__name__
            logger.error("Failed schedule #%s: %s", schedule_id, message)
            return ScheduleResult(schedule_id=schedule_id, ok=False, error=message)

        logger.info("Completed schedule #%s", schedule_id)
        return ScheduleResult(schedule_id=schedule_id, ok=True)

    async def _project_directory(self, channel_id: str) -> str:
        channel_config = await self.db.get_channel_directory(channel_id)
        if channel_config is None or not channel_config.directory:
            raise ProjectDirectoryMissingError(channel_id)
        return channel_config.directory

    async def _execute(self, row: ScheduledMessage) -> None:
        target_id = row.thread_id or row.channel_id
        channel = await self.chat.fetch_channel(target_id)
        if channel is None:
            raise ChatPlatformError(f"Channel {target_id} not found")

        thread: ChannelRef
        if channel.is_thread:
            if not channel.parent_id:
                raise ChatPlatformError("Thread has no parent channel")
            directory = await self._project_directory(channel.parent_id)
            await self.chat.send_message(
                channel.id, f"⏰ **Scheduled message** (from {row.created_by}):\n{row.prompt}"
            )
            thread = channel
        elif channel.kind is ChannelKind.TEXT:
            directory = await self._project_directory(channel.id)
            starter = await self.chat.send_message(
                channel.id,
                f"⏰ **Scheduled** (from {row.created_by}): {preview(row.prompt, STARTER_PREVIEW_CHARS)}",
            )
            thread = await self.chat.create_thread(
                channel.id,
                f"Scheduled: {preview(row.prompt, PROMPT_PREVIEW_CHARS)}",
                starter_message_id=starter.id,
            )
        else:
            raise ChatPlatformError(f"Unsupported channel type: {channel.kind.value}")

        await self.mapper.run_prompt(thread, row.prompt, directory)

    async def _record(self, row: ScheduledMessage, result: ScheduleResult) -> bool:
        """Persist the terminal status. False if the row was resolved elsewhere meanwhile."""
        if row.id is None:
            return False
        if result.ok:
            updated = await self.db.complete_schedule(row.id)
        else:
            updated = await self.db.fail_schedule(row.id, result.error or "Unknown error")
        if not updated:
            logger.warning("Schedule #%s was resolved elsewhere while executing", row.id)
        return updated

    async def _notify(self, row: ScheduledMessage, result: ScheduleResult) -> None:
        """Post a one-line outcome to the hub channel, if one is configured."""
        if not self.app_id:
            return
        try:
            settings = await self.db.get_bot_settings(self.app_id)
        except Exception as e:
            logger.warning("Could not load hub settings for schedule #%s: %s", row.id, e)
            return
        if not settings.hub_channel_id:
            return

        emoji = "✅" if result.ok else "❌"
        lines = [
            f"{emoji} Schedule **#{row.id}** {result.status.value}",
            f"📍 {row.channel_id}",
            f"💬 {preview(row.prompt, PROMPT_PREVIEW_CHARS)}",
        ]
        if not result.ok:
            lines.append(f"⚠️ {result.error}")

        try:
            await self.chat.send_message(settings.hub_channel_id, "\n".join(lines))
        except Exception as e:
            logger.warning("Failed to send schedule notification for #%s: %s", row.id, e)
