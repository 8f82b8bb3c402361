"""Unit tests for the Scheduler."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from threadbridge.core.errors import AgentApiError, InvalidScheduleTimeError
from threadbridge.core.models import ChannelKind
from threadbridge.core.scheduler import Scheduler, format_schedule_line
from threadbridge.core.session_mapper import SessionMapper

pytestmark = pytest.mark.unit

APP_ID = "app-1"


@pytest.fixture
async def scheduler(db, chat, agent, clock):
    chat.add_channel("chan-1")
    chat.add_channel("hub")
    await db.set_channel_directory("chan-1", "/proj", "text")
    await db.set_bot_settings(APP_ID, "hub")

    mapper = SessionMapper(db, chat, agent)
    instance = Scheduler(db, chat, mapper, app_id=APP_ID, interval_s=0.01, clock=clock)
    yield instance
    await instance.close()


async def _schedule(scheduler, clock, prompt="Run tests", seconds=30, channel_id="chan-1", thread_id=None):
    return await scheduler.create_schedule(
        channel_id, prompt, clock.now + timedelta(seconds=seconds), "u1", thread_id=thread_id
    )


class TestCreateSchedule:
    @pytest.mark.asyncio
    async def test_rejects_past_time(self, scheduler, clock):
        with pytest.raises(InvalidScheduleTimeError):
            await scheduler.create_schedule("chan-1", "p", clock.now, "u1")

    @pytest.mark.asyncio
    async def test_from_input(self, scheduler, clock):
        row = await scheduler.create_schedule_from_input("chan-1", "90s", "p", "u1")
        assert row.status == "pending"
        assert row.scheduled_at == int((clock.now + timedelta(seconds=90)).timestamp() * 1000)

        with pytest.raises(InvalidScheduleTimeError, match="Invalid time format"):
            await scheduler.create_schedule_from_input("chan-1", "soonish", "p", "u1")

    @pytest.mark.asyncio
    async def test_list(self, scheduler, clock):
        first = await _schedule(scheduler, clock, "first")
        await _schedule(scheduler, clock, "second", seconds=60)
        rows = await scheduler.list_schedules("chan-1")
        assert [r.prompt for r in rows] == ["first", "second"]
        assert format_schedule_line(rows[0], clock.now).startswith(f"#{first.id} ")


class TestTick:
    @pytest.mark.asyncio
    async def test_executes_once_when_due(self, scheduler, db, chat, agent, clock):
        row = await _schedule(scheduler, clock, "Run tests", seconds=30)

        for _ in range(2):
            clock.advance(10)
            assert await scheduler.tick() == []
            assert (await db.get_scheduled_message(row.id)).status == "pending"

        clock.advance(10)
        results = await scheduler.tick()

        assert [(r.schedule_id, r.ok) for r in results] == [(row.id, True)]
        assert (await db.get_scheduled_message(row.id)).status == "completed"
        assert len(agent.prompts) == 1
        hub = chat.messages_to("hub")
        assert len(hub) == 1
        assert f"Schedule **#{row.id}** completed" in hub[0]
        assert "Run tests" in hub[0]

        clock.advance(10)
        assert await scheduler.tick() == []
        assert len(agent.prompts) == 1
        assert len(chat.messages_to("hub")) == 1

    @pytest.mark.asyncio
    async def test_text_channel_opens_thread(self, scheduler, db, chat, agent, clock):
        row = await _schedule(scheduler, clock, "Run tests", seconds=1)
        clock.advance(1)
        await scheduler.tick()

        assert chat.messages_to("chan-1") == ["⏰ **Scheduled** (from u1): Run tests"]
        thread = chat.threads_created[0]
        assert thread.name == "Scheduled: Run tests"
        assert thread.parent_id == "chan-1"
        assert agent.prompts[0]["directory"] == "/proj"
        assert await db.get_thread_session(thread.id) == agent.prompts[0]["session_id"]
        assert (await db.get_scheduled_message(row.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_thread_target_reuses_thread(self, scheduler, chat, agent, clock):
        chat.add_channel("thread-x", kind=ChannelKind.THREAD, parent_id="chan-1")
        await _schedule(scheduler, clock, "Continue", seconds=1, thread_id="thread-x")
        clock.advance(1)
        await scheduler.tick()

        assert chat.threads_created == []
        assert chat.messages_to("thread-x")[0] == "⏰ **Scheduled message** (from u1):\nContinue"
        assert agent.prompts[0]["text"] == "Continue"

    @pytest.mark.asyncio
    async def test_row_failures_are_isolated(self, scheduler, db, chat, clock):
        missing = await _schedule(scheduler, clock, "a", seconds=1, channel_id="gone")
        chat.add_channel("chan-2")
        unconfigured = await _schedule(scheduler, clock, "b", seconds=2, channel_id="chan-2")
        ok = await _schedule(scheduler, clock, "c", seconds=3)
        clock.advance(5)

        results = await scheduler.tick()

        assert [(r.schedule_id, r.ok) for r in results] == [(missing.id, False), (unconfigured.id, False), (ok.id, True)]
        assert (await db.get_scheduled_message(missing.id)).error_message == "Channel gone not found"
        assert (await db.get_scheduled_message(unconfigured.id)).error_message == (
            "No project directory configured for channel chan-2"
        )
        assert (await db.get_scheduled_message(ok.id)).status == "completed"

        hub = chat.messages_to("hub")
        assert len(hub) == 3
        assert "failed" in hub[0]
        assert "⚠️ Channel gone not found" in hub[0]

    @pytest.mark.asyncio
    async def test_unsupported_channel(self, scheduler, db, chat, clock):
        chat.add_channel("voice-1", kind=ChannelKind.OTHER)
        row = await _schedule(scheduler, clock, seconds=1, channel_id="voice-1")
        clock.advance(1)
        await scheduler.tick()
        assert (await db.get_scheduled_message(row.id)).error_message == "Unsupported channel type: other"

    @pytest.mark.asyncio
    async def test_agent_failure_recorded(self, scheduler, db, agent, clock):
        agent.fail_prompt = AgentApiError(500, "boom")
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        [result] = await scheduler.tick()

        assert not result.ok
        assert result.error == "Agent API error (500): boom"
        stored = await db.get_scheduled_message(row.id)
        assert stored.status == "failed"
        assert stored.error_message == "Agent API error (500): boom"

    @pytest.mark.asyncio
    async def test_hub_failure_ignored(self, scheduler, db, chat, clock):
        chat.fail_send_to.add("hub")
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        [result] = await scheduler.tick()

        assert result.ok
        assert (await db.get_scheduled_message(row.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_no_hub_configured(self, scheduler, db, chat, clock):
        await db.set_bot_settings(APP_ID, None)
        await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)
        await scheduler.tick()
        assert chat.messages_to("hub") == []

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, scheduler, db, agent, clock):
        agent.gate = asyncio.Event()
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        first = asyncio.create_task(scheduler.tick())
        await agent.entered.wait()
        assert scheduler.in_flight

        assert await scheduler.tick() == []

        agent.gate.set()
        results = await first
        assert [r.schedule_id for r in results] == [row.id]
        assert len(agent.prompts) == 1
        assert not scheduler.in_flight


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, scheduler, db, agent, clock):
        row = await _schedule(scheduler, clock, seconds=1)
        assert await scheduler.cancel_schedule(row.id, "u2")

        clock.advance(5)
        assert await scheduler.tick() == []
        assert agent.prompts == []
        assert (await db.get_scheduled_message(row.id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_resolved_is_noop(self, scheduler, db, clock):
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)
        await scheduler.tick()
        before = await db.get_scheduled_message(row.id)

        assert not await scheduler.cancel_schedule(row.id, "u2")
        after = await db.get_scheduled_message(row.id)
        assert after.status == "completed"
        assert after.finished_at == before.finished_at

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, scheduler):
        assert not await scheduler.cancel_schedule(424242, "u2")

    @pytest.mark.asyncio
    async def test_cancel_while_executing_keeps_cancelled(self, scheduler, db, chat, agent, clock):
        agent.gate = asyncio.Event()
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        tick = asyncio.create_task(scheduler.tick())
        await agent.entered.wait()
        assert await scheduler.cancel_schedule(row.id, "u2")
        agent.gate.set()
        await tick

        assert (await db.get_scheduled_message(row.id)).status == "cancelled"
        assert chat.messages_to("hub") == []

    @pytest.mark.asyncio
    async def test_queued_row_cancelled_during_tick_never_runs(self, scheduler, db, chat, agent, clock):
        agent.gate = asyncio.Event()
        first = await _schedule(scheduler, clock, "first", seconds=1)
        second = await _schedule(scheduler, clock, "second", seconds=2)
        clock.advance(2)

        tick = asyncio.create_task(scheduler.tick())
        await agent.entered.wait()
        assert await scheduler.cancel_schedule(second.id, "u2")
        agent.gate.set()
        results = await tick

        assert [p["text"] for p in agent.prompts] == ["first"]
        assert [r.schedule_id for r in results] == [first.id]
        assert (await db.get_scheduled_message(first.id)).status == "completed"
        assert (await db.get_scheduled_message(second.id)).status == "cancelled"
        hub = chat.messages_to("hub")
        assert len(hub) == 1
        assert f"Schedule **#{first.id}** completed" in hub[0]

    @pytest.mark.asyncio
    async def test_store_failure_on_one_row_does_not_stop_the_tick(self, scheduler, db, agent, clock, monkeypatch):
        agent.fail_prompt = AgentApiError(500, "kaput")
        first = await _schedule(scheduler, clock, "first", seconds=1)
        second = await _schedule(scheduler, clock, "second", seconds=2)
        clock.advance(2)

        real_fail_schedule = db.fail_schedule
        calls = []

        async def flaky_fail_schedule(schedule_id, error_message):
            calls.append(schedule_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return await real_fail_schedule(schedule_id, error_message)

        monkeypatch.setattr(db, "fail_schedule", flaky_fail_schedule)
        results = await scheduler.tick()

        assert [r.schedule_id for r in results] == [first.id, second.id]
        assert calls == [first.id, second.id]
        assert (await db.get_scheduled_message(first.id)).status == "pending"
        assert (await db.get_scheduled_message(second.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_hub_lookup_failure_is_logged(self, scheduler, db, chat, clock, monkeypatch):
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        async def broken_settings(app_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "get_bot_settings", broken_settings)
        results = await scheduler.tick()

        assert [r.ok for r in results] == [True]
        assert (await db.get_scheduled_message(row.id)).status == "completed"
        assert chat.messages_to("hub") == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_ticks(self, scheduler, db, clock):
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        await scheduler.start()
        for _ in range(200):
            if (await db.get_scheduled_message(row.id)).status != "pending":
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert (await db.get_scheduled_message(row.id)).status == "completed"
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_tick_finish(self, scheduler, db, agent, clock):
        agent.gate = asyncio.Event()
        row = await _schedule(scheduler, clock, seconds=1)
        clock.advance(1)

        await scheduler.start()
        await agent.entered.wait()

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        agent.gate.set()
        await stopping
        assert (await db.get_scheduled_message(row.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_when_idle(self, scheduler):
        await scheduler.start()
        await scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        await scheduler.stop()
        assert not scheduler.running
