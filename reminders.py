import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from core import build_message_link, format_reminder, now_utc
from errors import CoreError
from models import RefreshRequest, ReminderTask, UpdateType, parse_timing
from notify import NotificationPort
from queues import QueuePort
from response_store import ResponseStore
from schedule_store import ScheduleStore
from updates import UpdateCoordinator

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    closed: int = 0
    scanned: int = 0
    enqueued: int = 0


class ReminderScheduler:
    def __init__(
        self,
        schedules: ScheduleStore,
        queue: QueuePort,
        coordinator: Optional[UpdateCoordinator] = None,
        lookahead: timedelta = timedelta(days=7),
        batch_size: int = 20,
        batch_delay: float = 0.5,
    ):
        self.schedules = schedules
        self.queue = queue
        self.coordinator = coordinator
        self.lookahead = lookahead
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def tick(self, now: datetime) -> TickReport:
        report = TickReport()
        report.closed = await self._close_expired(now)

        candidates = [
            s for s in await self.schedules.find_by_deadline_range(now, now + self.lookahead)
            if s.pending_timings()
        ]
        report.scanned = len(candidates)
        for start in range(0, len(candidates), self.batch_size):
            if start:
                await asyncio.sleep(self.batch_delay)
            for schedule in candidates[start:start + self.batch_size]:
                for timing in schedule.pending_timings():
                    try:
                        offset = parse_timing(timing)
                    except CoreError:
                        logger.warning("Schedule %s has invalid reminder timing %r", schedule.id, timing)
                        continue
                    if now < schedule.deadline - offset:
                        continue
                    task = ReminderTask(schedule_id=schedule.id, guild_id=schedule.guild_id, timing_label=timing)
                    if await self.queue.enqueue(task.to_body(), dedupe_key=task.dedupe_key):
                        report.enqueued += 1

        if report.closed or report.enqueued:
            logger.info(
                "Reminder tick: %s closed, %s scanned, %s enqueued",
                report.closed, report.scanned, report.enqueued,
            )
        return report

    async def _close_expired(self, now: datetime) -> int:
        closed = 0
        for schedule in await self.schedules.find_expired(now):
            if not await self.schedules.close(schedule.id, schedule.guild_id):
                continue
            closed += 1
            logger.info("Schedule %s passed its deadline, closed", schedule.id)
            if self.coordinator is None or not schedule.message_id:
                continue
            try:
                await self.coordinator.request_refresh(
                    RefreshRequest(
                        schedule_id=schedule.id,
                        message_id=schedule.message_id,
                        channel_id=schedule.channel_id,
                        guild_id=schedule.guild_id,
                        update_type=UpdateType.CLOSE_UPDATE,
                    )
                )
            except CoreError:
                logger.exception("Cannot request refresh for closed schedule %s", schedule.id)
        return closed

    async def run_periodic(self, interval: float) -> None:
        while True:
            try:
                await self.tick(now_utc())
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reminder tick failed")
            await asyncio.sleep(interval)


class ReminderDispatcher:
    def __init__(
        self,
        schedules: ScheduleStore,
        responses: ResponseStore,
        notifier: NotificationPort,
        tz: Optional[ZoneInfo] = None,
    ):
        self.schedules = schedules
        self.responses = responses
        self.notifier = notifier
        self.tz = tz

    async def handle(self, body: Dict[str, Any]) -> None:
        task = ReminderTask.from_body(body)
        schedule = await self.schedules.find_by_id(task.schedule_id, task.guild_id)
        if schedule is None:
            logger.info("Reminder %s skipped: schedule not found", task.dedupe_key)
            return
        if not schedule.is_open:
            logger.info("Reminder %s skipped: schedule closed", task.dedupe_key)
            return
        if task.timing_label not in schedule.reminder_timings:
            logger.warning("Reminder %s skipped: timing no longer configured", task.dedupe_key)
            return
        if task.timing_label in schedule.reminders_sent:
            logger.debug("Reminder %s already sent", task.dedupe_key)
            return

        responded = len(await self.responses.find_by_schedule_id(schedule.id, schedule.guild_id))
        text = format_reminder(
            schedule,
            task.timing_label,
            responded,
            self.tz,
            build_message_link(schedule.channel_id, schedule.message_id),
        )
        sent_id = await self.notifier.send_message(schedule.channel_id, text)
        if sent_id is None:
            logger.warning("Reminder %s could not be delivered", task.dedupe_key)
            return

        try:
            await self.schedules.mark_reminder_sent(schedule.id, schedule.guild_id, task.timing_label)
        except CoreError:
            logger.exception("Reminder %s sent but not marked, it may be repeated", task.dedupe_key)
