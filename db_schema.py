import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from errors import transient

logger = logging.getLogger(__name__)

CREATE_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS schedules (
  id TEXT PRIMARY KEY,
  guild_id TEXT NOT NULL,
  channel_id TEXT NOT NULL,
  message_id TEXT,
  title TEXT NOT NULL,
  description TEXT,
  author_id TEXT NOT NULL,
  author_name TEXT NOT NULL DEFAULT '',
  deadline INTEGER,
  reminder_timings TEXT,
  reminder_mentions TEXT,
  reminders_sent TEXT,
  status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
  total_responses INTEGER NOT NULL DEFAULT 0,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS schedule_dates (
  schedule_id TEXT NOT NULL,
  date_id TEXT NOT NULL,
  datetime TEXT NOT NULL,
  display_order INTEGER NOT NULL,
  PRIMARY KEY (schedule_id, date_id),
  FOREIGN KEY(schedule_id) REFERENCES schedules(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS responses (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  schedule_id TEXT NOT NULL,
  guild_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  username TEXT NOT NULL,
  display_name TEXT,
  updated_at INTEGER NOT NULL,
  UNIQUE(schedule_id, user_id),
  FOREIGN KEY(schedule_id) REFERENCES schedules(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS response_statuses (
  response_id INTEGER NOT NULL,
  date_id TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('ok', 'maybe', 'ng')),
  PRIMARY KEY (response_id, date_id),
  FOREIGN KEY(response_id) REFERENCES responses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS refresh_state (
  schedule_id TEXT NOT NULL,
  message_id TEXT NOT NULL,
  state TEXT NOT NULL CHECK (state IN ('pending', 'in_flight')),
  dirty INTEGER NOT NULL DEFAULT 0,
  update_type TEXT NOT NULL,
  channel_id TEXT NOT NULL,
  guild_id TEXT NOT NULL,
  requested_at REAL NOT NULL,
  changed_at REAL NOT NULL,
  PRIMARY KEY (schedule_id, message_id)
);

CREATE TABLE IF NOT EXISTS queue_messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  queue TEXT NOT NULL,
  body TEXT NOT NULL,
  dedupe_key TEXT,
  status TEXT NOT NULL DEFAULT 'ready' CHECK (status IN ('ready', 'leased', 'dead')),
  attempts INTEGER NOT NULL DEFAULT 0,
  available_at REAL NOT NULL,
  leased_until REAL,
  last_error TEXT,
  created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_schedules_deadline ON schedules(status, deadline);
CREATE INDEX IF NOT EXISTS idx_schedules_message ON schedules(message_id, guild_id);
CREATE INDEX IF NOT EXISTS idx_schedule_dates_order ON schedule_dates(schedule_id, display_order);
CREATE INDEX IF NOT EXISTS idx_responses_schedule ON responses(schedule_id, guild_id);
CREATE INDEX IF NOT EXISTS idx_queue_ready ON queue_messages(queue, status, available_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_dedupe ON queue_messages(queue, dedupe_key)
  WHERE dedupe_key IS NOT NULL AND status IN ('ready', 'leased');
"""


class Database:
    """
    Opens aiosqlite connections with the settings every store relies on.

    Connections run in autocommit mode; writers open explicit
    ``BEGIN IMMEDIATE`` transactions through ``transaction()`` so concurrent
    votes wait on the busy timeout instead of failing on a lock upgrade.
    SQLite operational errors (locked, busy, I/O) surface as TRANSIENT
    CoreErrors.
    """

    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(CREATE_SQL)
            await db.commit()
        logger.info("Database ready at %s", self.path)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.path, timeout=self.timeout, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys=ON")
                yield db
        except aiosqlite.OperationalError as exc:
            raise transient(f"database unavailable: {exc}") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()
