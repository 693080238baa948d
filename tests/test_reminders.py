"""
Tests for the reminder tick and dispatcher.
"""

from datetime import timedelta

import pytest

from conftest import GUILD
from core import now_utc
from errors import CoreError, transient
from models import ReminderTask
from queues import QueueConsumer
from reminders import ReminderDispatcher, ReminderScheduler


@pytest.fixture
def scheduler(schedules, reminder_queue, coordinator):
    return ReminderScheduler(schedules, reminder_queue, coordinator, lookahead=timedelta(days=7), batch_delay=0)


@pytest.fixture
def dispatcher(schedules, responses, notifier):
    return ReminderDispatcher(schedules, responses, notifier)


@pytest.fixture
def consumer(reminder_queue, dispatcher):
    return QueueConsumer(reminder_queue, dispatcher.handle)


class TestTick:
    async def test_each_timing_fires_once(self, make_schedule, scheduler, consumer, notifier, schedules):
        """Timings 1d and 1h against a deadline two days out, ticking every ten minutes."""
        start = now_utc()
        s = await make_schedule(deadline=start + timedelta(days=2), reminder_timings=["1440", "60"])

        sent_after = []
        now = start
        while now < s.deadline:
            await scheduler.tick(now)
            await consumer.run_once()
            sent_after.append(list((await schedules.find_by_id(s.id, GUILD)).reminders_sent))
            now += timedelta(minutes=10)

        assert len(notifier.sent) == 2
        assert sent_after[-1] == ["1440", "60"]
        # reminders_sent only grows
        for before, after in zip(sent_after, sent_after[1:]):
            assert before == after[: len(before)]

    async def test_nothing_before_offset(self, make_schedule, scheduler, reminder_queue):
        now = now_utc()
        await make_schedule(deadline=now + timedelta(days=2), reminder_timings=["1d"])
        report = await scheduler.tick(now)
        assert report.enqueued == 0
        assert await reminder_queue.pending_count() == 0

    async def test_repeated_ticks_do_not_duplicate_tasks(self, make_schedule, scheduler, reminder_queue):
        now = now_utc()
        await make_schedule(deadline=now + timedelta(hours=5), reminder_timings=["8h"])
        assert (await scheduler.tick(now)).enqueued == 1
        assert (await scheduler.tick(now)).enqueued == 0
        assert await reminder_queue.pending_count() == 1

    async def test_overdue_timings_all_enqueued(self, make_schedule, scheduler):
        now = now_utc()
        await make_schedule(deadline=now + timedelta(hours=2), reminder_timings=["3d", "1d", "8h"])
        assert (await scheduler.tick(now)).enqueued == 3

    async def test_schedules_processed_in_batches(self, make_schedule, schedules, reminder_queue):
        now = now_utc()
        for _ in range(5):
            await make_schedule(deadline=now + timedelta(hours=1), reminder_timings=["8h"])
        scheduler = ReminderScheduler(schedules, reminder_queue, batch_size=2, batch_delay=0)

        report = await scheduler.tick(now)
        assert (report.scanned, report.enqueued) == (5, 5)

    async def test_expired_schedule_is_closed_and_refreshed(
        self, make_schedule, scheduler, schedules, coordinator, refresh_queue
    ):
        now = now_utc()
        s = await make_schedule(deadline=now + timedelta(hours=1))
        report = await scheduler.tick(now + timedelta(hours=2))

        assert report.closed == 1
        assert not (await schedules.find_by_id(s.id, GUILD)).is_open
        assert await coordinator.get_state(s.id, "m1") == "pending"
        [message] = await refresh_queue.receive()
        assert message.body["updateType"] == "CLOSE_UPDATE"

    async def test_deadline_close_posts_final_summary(self, make_schedule, scheduler, coordinator, refresh_queue, notifier):
        now = now_utc()
        s = await make_schedule(deadline=now + timedelta(hours=1))
        await scheduler.tick(now + timedelta(hours=2))
        await QueueConsumer(refresh_queue, coordinator.handle, coordinator.release).run_once()

        [(_, text)] = notifier.sent
        assert "is closed" in text
        assert "Nobody answered" in text
        assert await coordinator.get_state(s.id, "m1") == "idle"


class TestDispatcher:
    async def test_sends_and_marks(self, make_schedule, dispatcher, notifier, schedules):
        s = await make_schedule(reminder_mentions=["@team"])
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())

        assert len(notifier.sent) == 1
        assert "@team" in notifier.sent[0][1]
        assert "t.me/c/123/m1" in notifier.sent[0][1]
        assert (await schedules.find_by_id(s.id, GUILD)).reminders_sent == ["1d"]

    async def test_already_sent_is_skipped(self, make_schedule, dispatcher, notifier, schedules):
        s = await make_schedule()
        await schedules.mark_reminder_sent(s.id, GUILD, "1d")
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert notifier.sent == []

    async def test_closed_schedule_is_skipped(self, make_schedule, dispatcher, notifier, schedules):
        s = await make_schedule()
        await schedules.close(s.id, GUILD)
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert notifier.sent == []

    async def test_unknown_timing_is_skipped(self, make_schedule, dispatcher, notifier):
        s = await make_schedule(reminder_timings=["8h"])
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert notifier.sent == []

    async def test_permanent_send_failure_not_marked(self, make_schedule, dispatcher, notifier, schedules):
        s = await make_schedule()
        notifier.send_results = [None]
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert (await schedules.find_by_id(s.id, GUILD)).reminders_sent == []

    async def test_transient_send_failure_propagates(self, make_schedule, dispatcher, notifier, schedules):
        s = await make_schedule()
        notifier.send_results = [transient("down")]
        with pytest.raises(CoreError):
            await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert (await schedules.find_by_id(s.id, GUILD)).reminders_sent == []

    async def test_failed_marker_is_logged_and_acked(self, make_schedule, dispatcher, notifier, schedules, monkeypatch):
        s = await make_schedule()

        async def broken(*args):
            raise transient("database is locked")

        monkeypatch.setattr(schedules, "mark_reminder_sent", broken)
        await dispatcher.handle(ReminderTask(s.id, GUILD, "1d").to_body())
        assert len(notifier.sent) == 1
