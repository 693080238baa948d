"""
Tests for the debounced status-message refresh.
"""

import pytest

from conftest import CHANNEL, GUILD
from errors import transient
from models import RefreshRequest, Response, UpdateType
from queues import QueueConsumer
from updates import STATE_IDLE, STATE_IN_FLIGHT, STATE_PENDING


def refresh(schedule, update_type=UpdateType.VOTE_UPDATE):
    return RefreshRequest(
        schedule_id=schedule.id,
        message_id=schedule.message_id,
        channel_id=CHANNEL,
        guild_id=GUILD,
        update_type=update_type,
    )


@pytest.fixture
def consumer(refresh_queue, coordinator):
    return QueueConsumer(refresh_queue, coordinator.handle, coordinator.release)


class TestCoalescing:
    async def test_burst_of_votes_produces_one_edit(self, make_schedule, service, consumer, notifier, clock, coordinator):
        """The single edit reflects the last vote of the burst."""
        s = await make_schedule()
        for i in range(5):
            result = await service.submit_date_status(s.id, GUILD, f"u{i}", f"user{i}", "d1", "ok")
            assert result.success

        assert await consumer.run_once() == 0
        clock.advance(5)
        assert await consumer.run_once() == 1

        assert len(notifier.edits) == 1
        channel_id, message_id, text, buttons = notifier.edits[0]
        assert (channel_id, message_id) == (CHANNEL, "m1")
        assert "✅5" in text
        assert buttons
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE

    async def test_request_while_pending_does_not_enqueue(self, make_schedule, coordinator, refresh_queue):
        s = await make_schedule()
        assert await coordinator.request_refresh(refresh(s)) is True
        assert await coordinator.request_refresh(refresh(s)) is False
        assert await coordinator.get_state(s.id, "m1") == STATE_PENDING
        assert await refresh_queue.pending_count() == 1

    async def test_request_while_in_flight_schedules_one_follow_up(
        self, make_schedule, coordinator, consumer, notifier, clock, responses
    ):
        s = await make_schedule()
        states = []

        async def vote_during_edit():
            if len(notifier.edits) == 1:
                states.append(await coordinator.get_state(s.id, "m1"))
                await responses.upsert(
                    Response(schedule_id=s.id, user_id="late", username="late", date_statuses={"d2": "ok"}),
                    GUILD,
                    partial=True,
                )
                assert await coordinator.request_refresh(refresh(s)) is False

        notifier.on_edit = vote_during_edit
        await coordinator.request_refresh(refresh(s))
        clock.advance(5)
        await consumer.run_once()

        assert states == [STATE_IN_FLIGHT]
        assert await coordinator.get_state(s.id, "m1") == STATE_PENDING

        clock.advance(5)
        await consumer.run_once()
        assert len(notifier.edits) == 2
        assert "⭐ 11/02 19:00" in notifier.edits[1][2]
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE

    async def test_close_is_dispatched_immediately(self, make_schedule, coordinator, consumer, notifier, refresh_queue, clock):
        s = await make_schedule()
        await coordinator.request_refresh(refresh(s))
        assert await coordinator.request_refresh(refresh(s, UpdateType.CLOSE_UPDATE)) is True

        assert await consumer.run_once() == 1
        assert len(notifier.edits) == 1

        # the delayed dispatch from the first request finds nothing to do
        clock.advance(5)
        assert await consumer.run_once() == 1
        assert len(notifier.edits) == 1
        assert await refresh_queue.pending_count() == 0

    async def test_stale_state_is_reset(self, make_schedule, coordinator, refresh_queue, clock):
        s = await make_schedule()
        await coordinator.request_refresh(refresh(s))
        clock.advance(5)
        [lost] = await refresh_queue.receive()
        await refresh_queue.ack(lost)

        clock.advance(121)
        assert await coordinator.request_refresh(refresh(s)) is True
        assert await coordinator.get_state(s.id, "m1") == STATE_PENDING
        clock.advance(5)
        [again] = await refresh_queue.receive()
        assert again.body["scheduleId"] == s.id
        assert await refresh_queue.receive() == []


class TestFailures:
    async def test_transient_failure_is_retried(self, make_schedule, coordinator, consumer, notifier, clock):
        s = await make_schedule()
        notifier.edit_results = [transient("rate limited", retry_after=2)]
        await coordinator.request_refresh(refresh(s))
        clock.advance(5)
        await consumer.run_once()

        assert await coordinator.get_state(s.id, "m1") == STATE_PENDING
        clock.advance(2)
        await consumer.run_once()
        assert len(notifier.edits) == 2
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE

    async def test_retry_bound_releases_state(self, make_schedule, coordinator, consumer, notifier, clock, refresh_queue):
        s = await make_schedule()
        notifier.edit_results = [transient("down", retry_after=1) for _ in range(10)]
        await coordinator.request_refresh(refresh(s))
        clock.advance(5)
        for _ in range(6):
            await consumer.run_once()
            clock.advance(1)

        assert len(notifier.edits) == 4
        assert len(await refresh_queue.dead_messages()) == 1
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE
        assert await coordinator.request_refresh(refresh(s)) is True

    async def test_permanent_failure_is_not_retried(self, make_schedule, coordinator, consumer, notifier, clock, refresh_queue):
        s = await make_schedule()
        notifier.edit_results = [False]
        await coordinator.request_refresh(refresh(s))
        clock.advance(5)
        await consumer.run_once()
        clock.advance(60)
        await consumer.run_once()

        assert len(notifier.edits) == 1
        assert await refresh_queue.pending_count() == 0
        assert await refresh_queue.dead_messages() == []
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE

    async def test_closing_summary_is_retried_with_the_close(
        self, make_schedule, coordinator, consumer, notifier, clock, schedules
    ):
        s = await make_schedule()
        await schedules.close(s.id, GUILD)
        notifier.send_results = [transient("down", retry_after=1)]
        await coordinator.request_refresh(refresh(s, UpdateType.CLOSE_UPDATE))
        await consumer.run_once()
        assert len(notifier.sent) == 1
        assert await coordinator.get_state(s.id, "m1") == STATE_PENDING

        clock.advance(1)
        await consumer.run_once()
        assert len(notifier.sent) == 2
        assert "is closed" in notifier.sent[1][1]
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE

    async def test_open_schedule_gets_no_closing_summary(self, make_schedule, coordinator, consumer, notifier):
        s = await make_schedule()
        await coordinator.request_refresh(refresh(s, UpdateType.CLOSE_UPDATE))
        await consumer.run_once()
        assert len(notifier.edits) == 1
        assert notifier.sent == []

    async def test_deleted_schedule_is_skipped(self, make_schedule, coordinator, consumer, notifier, clock, schedules):
        s = await make_schedule()
        await coordinator.request_refresh(refresh(s))
        await schedules.delete(s.id, GUILD)
        clock.advance(5)
        await consumer.run_once()

        assert notifier.edits == []
        assert await coordinator.get_state(s.id, "m1") == STATE_IDLE
