import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from core import QueueSettings
from db_schema import Database
from errors import CoreError, is_transient, retry_after

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class QueueMessage:
    id: int
    body: Dict[str, Any]
    attempts: int


class QueuePort(Protocol):
    async def enqueue(self, body: Dict[str, Any], delay: float = 0.0, dedupe_key: Optional[str] = None) -> bool:
        ...


class SqliteQueue:
    def __init__(
        self,
        db: Database,
        name: str,
        settings: Optional[QueueSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.name = name
        self.settings = settings or QueueSettings()
        self.clock = clock

    async def enqueue(self, body: Dict[str, Any], delay: float = 0.0, dedupe_key: Optional[str] = None) -> bool:
        """Returns False when a live message with the same dedupe_key already exists."""
        now = self.clock()
        async with self.db.transaction() as db:
            cur = await db.execute(
                "INSERT OR IGNORE INTO queue_messages(queue, body, dedupe_key, status, attempts, available_at, created_at) "
                "VALUES(?, ?, ?, 'ready', 0, ?, ?)",
                (self.name, json.dumps(body), dedupe_key, now + max(delay, 0.0), now),
            )
            added = cur.rowcount > 0
        if not added:
            logger.debug("Queue %s: duplicate %s skipped", self.name, dedupe_key)
        return added

    async def receive(self, limit: Optional[int] = None) -> List[QueueMessage]:
        limit = limit or self.settings.max_batch_size
        now = self.clock()
        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT id, body, attempts FROM queue_messages WHERE queue=? AND ("
                "(status='ready' AND available_at<=?) OR (status='leased' AND leased_until<=?)"
                ") ORDER BY available_at, id LIMIT ?",
                (self.name, now, now, limit),
            )
            rows = await cur.fetchall()
            await cur.close()
            if not rows:
                return []
            ids = [row["id"] for row in rows]
            await db.execute(
                f"UPDATE queue_messages SET status='leased', leased_until=?, attempts=attempts+1 "
                f"WHERE id IN ({', '.join('?' for _ in ids)})",
                (now + self.settings.visibility_timeout, *ids),
            )
        return [QueueMessage(id=row["id"], body=json.loads(row["body"]), attempts=row["attempts"] + 1) for row in rows]

    async def ack(self, message: QueueMessage) -> None:
        async with self.db.transaction() as db:
            await db.execute("DELETE FROM queue_messages WHERE id=?", (message.id,))

    async def retry(self, message: QueueMessage, error: str, delay: Optional[float] = None) -> bool:
        """Schedules another attempt. Returns False once the retry budget is spent and the message is dead."""
        if message.attempts > self.settings.max_retries:
            await self.dead_letter(message, error)
            return False
        if delay is None:
            delay = self.settings.retry_delay * message.attempts
        async with self.db.transaction() as db:
            await db.execute(
                "UPDATE queue_messages SET status='ready', leased_until=NULL, available_at=?, last_error=? WHERE id=?",
                (self.clock() + delay, error, message.id),
            )
        logger.info(
            "Queue %s: message %s retry %s/%s in %.1fs (%s)",
            self.name, message.id, message.attempts, self.settings.max_retries, delay, error,
        )
        return True

    async def dead_letter(self, message: QueueMessage, error: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                "UPDATE queue_messages SET status='dead', leased_until=NULL, last_error=? WHERE id=?",
                (error, message.id),
            )
        logger.error(
            "Queue %s: message %s dropped after %s attempt(s): %s body=%s",
            self.name, message.id, message.attempts, error, message.body,
        )

    async def pending_count(self) -> int:
        async with self.db.connect() as db:
            cur = await db.execute(
                "SELECT COUNT(*) FROM queue_messages WHERE queue=? AND status IN ('ready', 'leased')",
                (self.name,),
            )
            row = await cur.fetchone()
            await cur.close()
            return row[0]

    async def dead_messages(self) -> List[QueueMessage]:
        async with self.db.connect() as db:
            cur = await db.execute(
                "SELECT id, body, attempts FROM queue_messages WHERE queue=? AND status='dead' ORDER BY id",
                (self.name,),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [QueueMessage(id=r["id"], body=json.loads(r["body"]), attempts=r["attempts"]) for r in rows]


class QueueConsumer:
    """Runs `handler` for batches of messages; `on_terminal_failure` gets the body of every dropped one."""

    def __init__(
        self,
        queue: SqliteQueue,
        handler: Handler,
        on_terminal_failure: Optional[Handler] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.on_terminal_failure = on_terminal_failure
        self.settings = queue.settings

    async def collect_batch(self) -> List[QueueMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.max_batch_wait
        batch: List[QueueMessage] = []
        while True:
            batch.extend(await self.queue.receive(self.settings.max_batch_size - len(batch)))
            remaining = deadline - loop.time()
            if len(batch) >= self.settings.max_batch_size or remaining <= 0:
                return batch
            await asyncio.sleep(min(self.settings.poll_interval, remaining))

    async def run_once(self) -> int:
        batch = await self.collect_batch()
        if batch:
            await asyncio.gather(*(self._process(message) for message in batch))
        return len(batch)

    async def run_forever(self) -> None:
        logger.info("Queue %s consumer started", self.queue.name)
        while True:
            try:
                if not await self.run_once():
                    await asyncio.sleep(self.settings.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Queue %s consumer error", self.queue.name)
                await asyncio.sleep(self.settings.poll_interval)

    async def _process(self, message: QueueMessage) -> None:
        try:
            await self.handler(message.body)
        except CoreError as exc:
            if is_transient(exc):
                if not await self.queue.retry(message, str(exc), retry_after(exc)):
                    await self._terminal(message)
                return
            await self.queue.dead_letter(message, f"{exc.kind.value}: {exc}")
            await self._terminal(message)
            return
        except Exception as exc:
            logger.exception("Queue %s: handler failed for message %s", self.queue.name, message.id)
            if not await self.queue.retry(message, repr(exc)):
                await self._terminal(message)
            return
        await self.queue.ack(message)

    async def _terminal(self, message: QueueMessage) -> None:
        if self.on_terminal_failure is None:
            return
        try:
            await self.on_terminal_failure(message.body)
        except Exception:
            logger.exception("Queue %s: terminal failure hook failed for message %s", self.queue.name, message.id)
