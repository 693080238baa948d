import logging
import time
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from core import build_message_link, format_card, format_closing, vote_buttons
from db_schema import Database
from models import RefreshRequest, Summary, UpdateType
from notify import NotificationPort
from queues import QueuePort
from summary import SummaryAggregator

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_PENDING = "pending"
STATE_IN_FLIGHT = "in_flight"


class UpdateCoordinator:
    def __init__(
        self,
        db: Database,
        queue: QueuePort,
        aggregator: SummaryAggregator,
        notifier: Optional[NotificationPort] = None,
        debounce_seconds: float = 5.0,
        stale_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
        tz: Optional[ZoneInfo] = None,
    ):
        self.db = db
        self.queue = queue
        self.aggregator = aggregator
        self.notifier = notifier
        self.debounce_seconds = debounce_seconds
        self.stale_seconds = stale_seconds
        self.clock = clock
        self.tz = tz

    async def get_state(self, schedule_id: str, message_id: str) -> str:
        async with self.db.connect() as db:
            cur = await db.execute(
                "SELECT state FROM refresh_state WHERE schedule_id=? AND message_id=?",
                (schedule_id, message_id),
            )
            row = await cur.fetchone()
            await cur.close()
        return row["state"] if row else STATE_IDLE

    async def request_refresh(self, request: RefreshRequest) -> bool:
        """Returns True when a dispatch was enqueued. CLOSE updates skip the coalescing window."""
        now = self.clock()
        immediate = request.update_type is UpdateType.CLOSE_UPDATE
        created = False
        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT state, update_type, changed_at FROM refresh_state WHERE schedule_id=? AND message_id=?",
                (request.schedule_id, request.message_id),
            )
            row = await cur.fetchone()
            await cur.close()

            if row and now - row["changed_at"] > self.stale_seconds:
                logger.warning(
                    "Refresh state of %s/%s stuck in %s, resetting",
                    request.schedule_id, request.message_id, row["state"],
                )
                row = None

            if row is None:
                await db.execute(
                    "INSERT OR REPLACE INTO refresh_state(schedule_id, message_id, state, dirty, update_type, "
                    "channel_id, guild_id, requested_at, changed_at) VALUES(?, ?, ?, 0, ?, ?, ?, ?, ?)",
                    (
                        request.schedule_id,
                        request.message_id,
                        STATE_PENDING,
                        request.update_type.value,
                        request.channel_id,
                        request.guild_id,
                        now,
                        now,
                    ),
                )
                created = True
                enqueue = True
            else:
                update_type = request.update_type.value
                if row["update_type"] == UpdateType.CLOSE_UPDATE.value:
                    update_type = row["update_type"]
                in_flight = row["state"] == STATE_IN_FLIGHT
                await db.execute(
                    "UPDATE refresh_state SET update_type=?, channel_id=?, guild_id=?, requested_at=?, "
                    "dirty=CASE WHEN state=? THEN 1 ELSE dirty END WHERE schedule_id=? AND message_id=?",
                    (
                        update_type,
                        request.channel_id,
                        request.guild_id,
                        now,
                        STATE_IN_FLIGHT,
                        request.schedule_id,
                        request.message_id,
                    ),
                )
                enqueue = immediate and not in_flight

        if not enqueue:
            return False
        try:
            await self.queue.enqueue(request.to_body(), delay=0.0 if immediate else self.debounce_seconds)
        except Exception:
            if created:
                await self.release(request.to_body())
            raise
        return True

    async def handle(self, body: Dict[str, Any]) -> None:
        """Queue handler: renders the current summary into the status message."""
        if self.notifier is None:
            raise RuntimeError("UpdateCoordinator needs a notifier to handle refreshes")
        request = RefreshRequest.from_body(body)
        latest = await self._claim(request)
        if latest is None:
            logger.debug("Refresh of %s/%s already handled", request.schedule_id, request.message_id)
            return

        try:
            summary = await self.aggregator.get_schedule_summary(latest.schedule_id, latest.guild_id)
            if summary is None:
                logger.info("Schedule %s is gone, skipping refresh", latest.schedule_id)
                await self.release(body)
                return
            delivered = await self.notifier.edit_message(
                latest.channel_id,
                latest.message_id,
                format_card(summary, self.tz),
                vote_buttons(summary.schedule),
            )
            if latest.update_type is UpdateType.CLOSE_UPDATE and not summary.schedule.is_open:
                await self._announce_close(latest, summary)
        except Exception:
            await self._set_pending(latest)
            raise

        if not delivered:
            logger.warning(
                "Status message %s of schedule %s cannot be edited, giving up",
                latest.message_id, latest.schedule_id,
            )
            await self.release(body)
            return
        await self._finish(latest)

    async def release(self, body: Dict[str, Any]) -> None:
        """Returns the pair to Idle. Used when the queue gives up on a dispatch."""
        request = RefreshRequest.from_body(body)
        async with self.db.transaction() as db:
            await db.execute(
                "DELETE FROM refresh_state WHERE schedule_id=? AND message_id=?",
                (request.schedule_id, request.message_id),
            )

    async def _announce_close(self, request: RefreshRequest, summary: Summary) -> None:
        text = format_closing(summary, build_message_link(request.channel_id, request.message_id))
        if await self.notifier.send_message(request.channel_id, text) is None:
            logger.warning("Closing summary of schedule %s could not be posted", request.schedule_id)

    async def _claim(self, request: RefreshRequest) -> Optional[RefreshRequest]:
        async with self.db.transaction() as db:
            cur = await db.execute(
                "UPDATE refresh_state SET state=?, dirty=0, changed_at=? "
                "WHERE schedule_id=? AND message_id=? AND state=?",
                (STATE_IN_FLIGHT, self.clock(), request.schedule_id, request.message_id, STATE_PENDING),
            )
            if cur.rowcount == 0:
                return None
            cur = await db.execute(
                "SELECT update_type, channel_id, guild_id FROM refresh_state WHERE schedule_id=? AND message_id=?",
                (request.schedule_id, request.message_id),
            )
            row = await cur.fetchone()
            await cur.close()
        return RefreshRequest(
            schedule_id=request.schedule_id,
            message_id=request.message_id,
            channel_id=row["channel_id"],
            guild_id=row["guild_id"],
            update_type=UpdateType(row["update_type"]),
        )

    async def _set_pending(self, request: RefreshRequest) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                "UPDATE refresh_state SET state=?, changed_at=? WHERE schedule_id=? AND message_id=? AND state=?",
                (STATE_PENDING, self.clock(), request.schedule_id, request.message_id, STATE_IN_FLIGHT),
            )

    async def _finish(self, request: RefreshRequest) -> None:
        follow_up = None
        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT state, dirty, update_type, channel_id, guild_id FROM refresh_state "
                "WHERE schedule_id=? AND message_id=?",
                (request.schedule_id, request.message_id),
            )
            row = await cur.fetchone()
            await cur.close()
            if not row or row["state"] != STATE_IN_FLIGHT:
                return
            if row["dirty"]:
                await db.execute(
                    "UPDATE refresh_state SET state=?, dirty=0, changed_at=? WHERE schedule_id=? AND message_id=?",
                    (STATE_PENDING, self.clock(), request.schedule_id, request.message_id),
                )
                follow_up = RefreshRequest(
                    schedule_id=request.schedule_id,
                    message_id=request.message_id,
                    channel_id=row["channel_id"],
                    guild_id=row["guild_id"],
                    update_type=UpdateType(row["update_type"]),
                )
            else:
                await db.execute(
                    "DELETE FROM refresh_state WHERE schedule_id=? AND message_id=?",
                    (request.schedule_id, request.message_id),
                )

        if follow_up is not None:
            delay = 0.0 if follow_up.update_type is UpdateType.CLOSE_UPDATE else self.debounce_seconds
            await self.queue.enqueue(follow_up.to_body(), delay=delay)
