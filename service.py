"""Use cases shared by the bot and the HTTP API."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Dict, List, Optional, TypeVar

from core import Settings, now_utc
from db_schema import Database
from errors import CoreError, ErrorKind, Result, conflict, forbidden, not_found, validation
from models import (
    DEFAULT_REMINDER_TIMINGS,
    VOTE_STATUSES,
    RefreshRequest,
    Response,
    Schedule,
    ScheduleDate,
    Summary,
    UpdateType,
    parse_timing,
)
from notify import NotificationPort
from queues import SqliteQueue
from response_store import ResponseStore
from schedule_store import ScheduleStore
from updates import UpdateCoordinator

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _new_id() -> str:
    return uuid.uuid4().hex


def _clean_dates(dates: List[str]) -> List[str]:
    cleaned = []
    for raw in dates:
        value = (raw or "").strip()
        if value and value not in cleaned:
            cleaned.append(value)
    if not cleaned:
        raise validation("at least one date is required")
    return cleaned


def _build_dates(datetimes: List[str], existing: Optional[List[ScheduleDate]] = None) -> List[ScheduleDate]:
    """Dates whose text matches an existing date keep its id, and with it the votes."""
    by_text = {d.datetime: d.id for d in existing or []}
    used = set(by_text.values())
    result = []
    for order, text in enumerate(datetimes):
        date_id = by_text.get(text)
        if date_id is None:
            date_id = uuid.uuid4().hex[:8]
            while date_id in used:
                date_id = uuid.uuid4().hex[:8]
            used.add(date_id)
        result.append(ScheduleDate(id=date_id, datetime=text, display_order=order))
    return result


def _check_deadline(deadline: Optional[datetime]) -> None:
    if deadline is None:
        return
    if deadline.tzinfo is None:
        raise validation("deadline must carry a timezone")
    if deadline <= now_utc():
        raise validation("deadline must be in the future")


def _check_timings(timings: List[str], lookahead: timedelta) -> List[str]:
    for label in timings:
        if parse_timing(label) > lookahead:
            raise validation(
                f"reminder timing {label!r} is longer than the reminder lookahead",
                timing=label,
                lookahead_hours=lookahead.total_seconds() / 3600,
            )
    return list(dict.fromkeys(timings))


class ScheduleService:
    def __init__(
        self,
        schedules: ScheduleStore,
        responses: ResponseStore,
        coordinator: Optional[UpdateCoordinator] = None,
        default_timings: Optional[List[str]] = None,
        lookahead: timedelta = timedelta(days=7),
    ):
        self.schedules = schedules
        self.responses = responses
        self.coordinator = coordinator
        self.default_timings = list(default_timings or DEFAULT_REMINDER_TIMINGS)
        self.lookahead = lookahead

    async def _guard(self, action: str, call: Awaitable[T]) -> Result[T]:
        try:
            return Result.ok(await call)
        except CoreError as exc:
            if exc.kind is ErrorKind.TRANSIENT:
                logger.warning("%s failed temporarily: %s", action, exc)
            else:
                logger.info("%s rejected: %s %s", action, exc.kind.value, exc)
            return Result.fail(exc.error)

    async def _load(self, schedule_id: str, guild_id: str) -> Schedule:
        schedule = await self.schedules.find_by_id(schedule_id, guild_id)
        if schedule is None:
            raise not_found("Schedule", schedule_id=schedule_id, guild_id=guild_id)
        return schedule

    async def _load_own(self, schedule_id: str, guild_id: str, user_id: str) -> Schedule:
        schedule = await self._load(schedule_id, guild_id)
        if schedule.author_id != user_id:
            raise forbidden("only the author can change this schedule", schedule_id=schedule_id)
        return schedule

    async def _refresh(self, schedule: Schedule, update_type: UpdateType) -> None:
        if self.coordinator is None or not schedule.message_id:
            return
        try:
            await self.coordinator.request_refresh(
                RefreshRequest(
                    schedule_id=schedule.id,
                    message_id=schedule.message_id,
                    channel_id=schedule.channel_id,
                    guild_id=schedule.guild_id,
                    update_type=update_type,
                )
            )
        except CoreError:
            logger.exception("Refresh request for schedule %s failed", schedule.id)

    # --- schedules ---

    async def create_schedule(
        self,
        guild_id: str,
        channel_id: str,
        title: str,
        dates: List[str],
        author_id: str,
        author_name: str = "",
        description: Optional[str] = None,
        deadline: Optional[datetime] = None,
        reminder_timings: Optional[List[str]] = None,
        reminder_mentions: Optional[List[str]] = None,
    ) -> Result[Schedule]:
        async def create() -> Schedule:
            if not (title or "").strip():
                raise validation("title is required")
            _check_deadline(deadline)
            timings = _check_timings(
                self.default_timings if reminder_timings is None else reminder_timings, self.lookahead
            )
            schedule = Schedule(
                id=_new_id(),
                guild_id=guild_id,
                channel_id=channel_id,
                title=title.strip(),
                dates=_build_dates(_clean_dates(dates)),
                author_id=author_id,
                author_name=author_name,
                description=description,
                deadline=deadline,
                reminder_timings=timings if deadline else [],
                reminder_mentions=list(reminder_mentions or []),
            )
            saved = await self.schedules.save(schedule)
            logger.info("Schedule %s created in %s by %s", saved.id, guild_id, author_id)
            return saved

        return await self._guard("create_schedule", create())

    async def attach_message(self, schedule_id: str, guild_id: str, message_id: str) -> Result[bool]:
        async def attach() -> bool:
            if not await self.schedules.set_message_id(schedule_id, guild_id, message_id):
                raise not_found("Schedule", schedule_id=schedule_id, guild_id=guild_id)
            return True

        return await self._guard("attach_message", attach())

    async def get_schedule(self, schedule_id: str, guild_id: str) -> Result[Schedule]:
        return await self._guard("get_schedule", self._load(schedule_id, guild_id))

    async def update_schedule(
        self,
        schedule_id: str,
        guild_id: str,
        editor_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        dates: Optional[List[str]] = None,
        deadline: Optional[datetime] = None,
        reminder_timings: Optional[List[str]] = None,
        reminder_mentions: Optional[List[str]] = None,
        clear_deadline: bool = False,
    ) -> Result[Schedule]:
        async def update() -> Schedule:
            schedule = await self._load_own(schedule_id, guild_id, editor_id)
            if not schedule.is_open:
                raise conflict("schedule is closed", schedule_id=schedule_id)
            if title is not None:
                if not title.strip():
                    raise validation("title is required")
                schedule.title = title.strip()
            if description is not None:
                schedule.description = description or None
            if dates is not None:
                schedule.dates = _build_dates(_clean_dates(dates), schedule.dates)
            if clear_deadline:
                if deadline is not None:
                    raise validation("deadline cannot be set and cleared at once")
                schedule.deadline = None
            if deadline is not None:
                _check_deadline(deadline)
                schedule.deadline = deadline
            if reminder_timings is not None:
                schedule.reminder_timings = _check_timings(reminder_timings, self.lookahead)
            if reminder_mentions is not None:
                schedule.reminder_mentions = list(reminder_mentions)
            saved = await self.schedules.save(schedule)
            await self._refresh(saved, UpdateType.EDIT_UPDATE)
            return saved

        return await self._guard("update_schedule", update())

    async def close_schedule(self, schedule_id: str, guild_id: str, editor_id: str) -> Result[Schedule]:
        async def close() -> Schedule:
            schedule = await self._load_own(schedule_id, guild_id, editor_id)
            if not schedule.is_open or not await self.schedules.close(schedule_id, guild_id):
                raise conflict("schedule is already closed", schedule_id=schedule_id)
            closed = await self._load(schedule_id, guild_id)
            logger.info("Schedule %s closed by %s", schedule_id, editor_id)
            await self._refresh(closed, UpdateType.CLOSE_UPDATE)
            return closed

        return await self._guard("close_schedule", close())

    async def delete_schedule(self, schedule_id: str, guild_id: str, editor_id: str) -> Result[bool]:
        async def delete() -> bool:
            await self._load_own(schedule_id, guild_id, editor_id)
            deleted = await self.schedules.delete(schedule_id, guild_id)
            logger.info("Schedule %s deleted by %s", schedule_id, editor_id)
            return deleted

        return await self._guard("delete_schedule", delete())

    # --- votes ---

    async def submit_response(
        self,
        schedule_id: str,
        guild_id: str,
        user_id: str,
        username: str,
        date_statuses: Dict[str, str],
        display_name: Optional[str] = None,
    ) -> Result[Response]:
        """Full submission: the given mapping replaces every earlier answer and must cover all dates."""

        async def submit() -> Response:
            schedule = await self._load(schedule_id, guild_id)
            if not schedule.is_open:
                raise conflict("schedule is closed", schedule_id=schedule_id)
            missing = [d for d in schedule.date_ids if d not in date_statuses]
            if missing:
                raise validation("every date needs an answer", date_ids=missing)
            stored = await self.responses.upsert(
                Response(
                    schedule_id=schedule_id,
                    user_id=user_id,
                    username=username,
                    display_name=display_name,
                    date_statuses=dict(date_statuses),
                ),
                guild_id,
                partial=False,
            )
            await self._refresh(schedule, UpdateType.VOTE_UPDATE)
            return stored

        return await self._guard("submit_response", submit())

    async def submit_date_status(
        self,
        schedule_id: str,
        guild_id: str,
        user_id: str,
        username: str,
        date_id: str,
        status: str,
        display_name: Optional[str] = None,
    ) -> Result[Response]:
        """Single-date vote: other dates keep their earlier answers."""

        async def submit() -> Response:
            if status not in VOTE_STATUSES:
                raise validation(f"invalid status {status!r}", status=status)
            schedule = await self._load(schedule_id, guild_id)
            if not schedule.is_open:
                raise conflict("schedule is closed", schedule_id=schedule_id)
            stored = await self.responses.upsert(
                Response(
                    schedule_id=schedule_id,
                    user_id=user_id,
                    username=username,
                    display_name=display_name,
                    date_statuses={date_id: status},
                ),
                guild_id,
                partial=True,
            )
            await self._refresh(schedule, UpdateType.VOTE_UPDATE)
            return stored

        return await self._guard("submit_date_status", submit())

    async def get_response(self, schedule_id: str, guild_id: str, user_id: str) -> Result[Optional[Response]]:
        return await self._guard("get_response", self.responses.find_by_user(schedule_id, user_id, guild_id))

    async def get_summary(self, schedule_id: str, guild_id: str) -> Result[Summary]:
        async def summary() -> Summary:
            result = await self.responses.get_schedule_summary(schedule_id, guild_id)
            if result is None:
                raise not_found("Schedule", schedule_id=schedule_id, guild_id=guild_id)
            return result

        return await self._guard("get_summary", summary())


@dataclass
class Components:
    db: Database
    schedules: ScheduleStore
    responses: ResponseStore
    refresh_queue: SqliteQueue
    reminder_queue: SqliteQueue
    coordinator: UpdateCoordinator
    service: ScheduleService


def build_components(settings: Settings, notifier: Optional[NotificationPort] = None) -> Components:
    """Wires the stores, queues and coordinator shared by the bot and the API process."""
    db = Database(settings.db_path)
    schedules = ScheduleStore(db)
    responses = ResponseStore(db, schedules)
    refresh_queue = SqliteQueue(db, "refresh", settings.refresh_queue)
    reminder_queue = SqliteQueue(db, "reminders", settings.reminder_queue)
    coordinator = UpdateCoordinator(
        db,
        refresh_queue,
        responses.aggregator,
        notifier,
        debounce_seconds=settings.refresh_debounce_seconds,
        stale_seconds=settings.refresh_stale_seconds,
        tz=settings.tz,
    )
    service = ScheduleService(
        schedules,
        responses,
        coordinator,
        settings.default_reminder_timings,
        lookahead=timedelta(hours=settings.reminder_lookahead_hours),
    )
    return Components(db, schedules, responses, refresh_queue, reminder_queue, coordinator, service)
