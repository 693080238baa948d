"""
Tests for the SQLite-backed queue and its consumer.
"""

from core import QueueSettings
from errors import not_found, transient
from queues import QueueConsumer, SqliteQueue


class TestSqliteQueue:
    async def test_delayed_message_is_invisible_until_due(self, refresh_queue, clock):
        await refresh_queue.enqueue({"n": 1}, delay=5)
        assert await refresh_queue.receive() == []

        clock.advance(5)
        messages = await refresh_queue.receive()
        assert [m.body for m in messages] == [{"n": 1}]
        assert messages[0].attempts == 1

    async def test_dedupe_key_while_live(self, reminder_queue):
        assert await reminder_queue.enqueue({"n": 1}, dedupe_key="s1:1d") is True
        assert await reminder_queue.enqueue({"n": 2}, dedupe_key="s1:1d") is False

        [message] = await reminder_queue.receive()
        await reminder_queue.ack(message)
        assert await reminder_queue.enqueue({"n": 3}, dedupe_key="s1:1d") is True

    async def test_receive_respects_batch_size(self, db, clock):
        queue = SqliteQueue(db, "q", QueueSettings(max_batch_size=3, max_batch_wait=0), clock=clock)
        for i in range(5):
            await queue.enqueue({"n": i})

        assert [m.body["n"] for m in await queue.receive()] == [0, 1, 2]
        assert [m.body["n"] for m in await queue.receive()] == [3, 4]

    async def test_unacked_message_comes_back(self, db, clock):
        queue = SqliteQueue(db, "q", QueueSettings(visibility_timeout=30, max_batch_wait=0), clock=clock)
        await queue.enqueue({"n": 1})
        await queue.receive()
        assert await queue.receive() == []

        clock.advance(30)
        [message] = await queue.receive()
        assert message.attempts == 2

    async def test_queues_are_isolated(self, db, clock):
        a = SqliteQueue(db, "a", clock=clock)
        b = SqliteQueue(db, "b", clock=clock)
        await a.enqueue({"n": 1}, dedupe_key="k")
        assert await b.enqueue({"n": 1}, dedupe_key="k") is True
        assert await a.pending_count() == 1


class TestQueueConsumer:
    async def test_success_acks(self, refresh_queue):
        seen = []

        async def handler(body):
            seen.append(body)

        await refresh_queue.enqueue({"n": 1})
        await refresh_queue.enqueue({"n": 2})
        assert await QueueConsumer(refresh_queue, handler).run_once() == 2
        assert sorted(b["n"] for b in seen) == [1, 2]
        assert await refresh_queue.pending_count() == 0

    async def test_transient_error_retried_then_dropped(self, refresh_queue, clock):
        """max_retries=3 means four deliveries in total before the message is dead."""
        calls = []
        dropped = []

        async def handler(body):
            calls.append(body)
            raise transient("gateway down", retry_after=1)

        async def on_drop(body):
            dropped.append(body)

        consumer = QueueConsumer(refresh_queue, handler, on_drop)
        await refresh_queue.enqueue({"n": 1})
        for _ in range(6):
            await consumer.run_once()
            clock.advance(1)

        assert len(calls) == 4
        assert dropped == [{"n": 1}]
        assert await refresh_queue.pending_count() == 0
        assert len(await refresh_queue.dead_messages()) == 1

    async def test_retry_after_delays_redelivery(self, refresh_queue, clock):
        calls = []

        async def handler(body):
            calls.append(body)
            if len(calls) == 1:
                raise transient("rate limited", retry_after=10)

        consumer = QueueConsumer(refresh_queue, handler)
        await refresh_queue.enqueue({"n": 1})
        await consumer.run_once()
        clock.advance(9)
        assert await consumer.run_once() == 0

        clock.advance(1)
        assert await consumer.run_once() == 1
        assert len(calls) == 2
        assert await refresh_queue.pending_count() == 0

    async def test_permanent_error_dropped_immediately(self, refresh_queue):
        dropped = []

        async def handler(body):
            raise not_found("Schedule")

        async def on_drop(body):
            dropped.append(body)

        await refresh_queue.enqueue({"n": 1})
        await QueueConsumer(refresh_queue, handler, on_drop).run_once()

        assert dropped == [{"n": 1}]
        assert await refresh_queue.pending_count() == 0

    async def test_unexpected_error_is_retried(self, refresh_queue, clock):
        calls = []

        async def handler(body):
            calls.append(body)
            if len(calls) == 1:
                raise ValueError("boom")

        consumer = QueueConsumer(refresh_queue, handler)
        await refresh_queue.enqueue({"n": 1})
        await consumer.run_once()
        clock.advance(60)
        await consumer.run_once()

        assert len(calls) == 2
        assert await refresh_queue.pending_count() == 0
