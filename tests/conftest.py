"""
Shared fixtures: a temporary SQLite database, the stores, a manual clock and
a notifier that records outgoing messages.
"""

from datetime import timedelta

import pytest

from core import QueueSettings, now_utc
from db_schema import Database
from models import Schedule, ScheduleDate
from queues import SqliteQueue
from response_store import ResponseStore
from schedule_store import ScheduleStore
from service import ScheduleService
from updates import UpdateCoordinator

GUILD = "g1"
CHANNEL = "-100123"


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNotifier:
    """
    Records calls. `edit_results` / `send_results` are consumed in order; an
    exception instance is raised instead of returned.
    """

    def __init__(self):
        self.edits = []
        self.sent = []
        self.edit_results = []
        self.send_results = []
        self.on_edit = None

    async def edit_message(self, channel_id, message_id, text, buttons):
        self.edits.append((channel_id, message_id, text, buttons))
        if self.on_edit is not None:
            await self.on_edit()
        if self.edit_results:
            result = self.edit_results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return True

    async def send_message(self, channel_id, text, buttons=None):
        self.sent.append((channel_id, text))
        if self.send_results:
            result = self.send_results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return str(len(self.sent))


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.sqlite3"))
    await database.init()
    return database


@pytest.fixture
def schedules(db):
    return ScheduleStore(db)


@pytest.fixture
def responses(db, schedules):
    return ResponseStore(db, schedules)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def refresh_queue(db, clock):
    return SqliteQueue(db, "refresh", QueueSettings(max_batch_wait=0, max_retries=3), clock=clock)


@pytest.fixture
def reminder_queue(db, clock):
    return SqliteQueue(db, "reminders", QueueSettings(max_batch_size=20, max_batch_wait=0), clock=clock)


@pytest.fixture
def coordinator(db, refresh_queue, responses, notifier, clock):
    return UpdateCoordinator(
        db,
        refresh_queue,
        responses.aggregator,
        notifier,
        debounce_seconds=5.0,
        stale_seconds=120.0,
        clock=clock,
    )


@pytest.fixture
def service(schedules, responses, coordinator):
    return ScheduleService(schedules, responses, coordinator)


@pytest.fixture
def make_schedule(schedules):
    counter = {"n": 0}

    async def factory(**overrides) -> Schedule:
        counter["n"] += 1
        values = dict(
            id=f"s{counter['n']}",
            guild_id=GUILD,
            channel_id=CHANNEL,
            title="Board games",
            dates=[
                ScheduleDate(id="d1", datetime="11/01 19:00"),
                ScheduleDate(id="d2", datetime="11/02 19:00"),
                ScheduleDate(id="d3", datetime="11/03 19:00"),
            ],
            author_id="author",
            author_name="Author",
            message_id="m1",
            deadline=now_utc() + timedelta(days=2),
            reminder_timings=["3d", "1d", "8h"],
        )
        values.update(overrides)
        return await schedules.save(Schedule(**values))

    return factory
