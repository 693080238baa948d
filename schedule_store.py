"""
SQLite storage for schedules and their candidate dates.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

import aiosqlite

from core import from_timestamp, now_utc, to_timestamp
from db_schema import Database
from models import STATUS_CLOSED, STATUS_OPEN, Schedule, ScheduleDate

logger = logging.getLogger(__name__)

SCHEDULE_COLUMNS = (
    "id, guild_id, channel_id, message_id, title, description, author_id, author_name, "
    "deadline, reminder_timings, reminder_mentions, reminders_sent, status, total_responses, "
    "created_at, updated_at"
)


def _json_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return list(json.loads(raw))


class ScheduleStore:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _row_to_schedule(row: aiosqlite.Row, dates: List[ScheduleDate]) -> Schedule:
        return Schedule(
            id=row["id"],
            guild_id=row["guild_id"],
            channel_id=row["channel_id"],
            message_id=row["message_id"],
            title=row["title"],
            description=row["description"],
            author_id=row["author_id"],
            author_name=row["author_name"],
            dates=dates,
            deadline=from_timestamp(row["deadline"]),
            reminder_timings=_json_list(row["reminder_timings"]),
            reminder_mentions=_json_list(row["reminder_mentions"]),
            reminders_sent=_json_list(row["reminders_sent"]),
            status=row["status"],
            total_responses=row["total_responses"],
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
        )

    @staticmethod
    async def _load_dates(db: aiosqlite.Connection, schedule_id: str) -> List[ScheduleDate]:
        cur = await db.execute(
            "SELECT date_id, datetime, display_order FROM schedule_dates "
            "WHERE schedule_id=? ORDER BY display_order",
            (schedule_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
        return [ScheduleDate(id=r["date_id"], datetime=r["datetime"], display_order=r["display_order"]) for r in rows]

    async def _hydrate(self, db: aiosqlite.Connection, rows) -> List[Schedule]:
        return [self._row_to_schedule(row, await self._load_dates(db, row["id"])) for row in rows]

    async def save(self, schedule: Schedule) -> Schedule:
        """
        Inserts or updates a schedule together with its dates in one transaction.

        A closed schedule stays closed and reminders_sent is merged with what
        is already stored, so a save from a stale copy never shrinks it.
        Votes for dates that are no longer part of the schedule are removed.
        """
        now = now_utc()
        schedule.created_at = schedule.created_at or now
        schedule.updated_at = now

        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT status, reminders_sent FROM schedules WHERE id=?",
                (schedule.id,),
            )
            existing = await cur.fetchone()
            await cur.close()
            if existing:
                if existing["status"] == STATUS_CLOSED:
                    schedule.status = STATUS_CLOSED
                stored_sent = _json_list(existing["reminders_sent"])
                schedule.reminders_sent = stored_sent + [t for t in schedule.reminders_sent if t not in stored_sent]

            await db.execute(
                f"INSERT INTO schedules({SCHEDULE_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "channel_id=excluded.channel_id, message_id=excluded.message_id, title=excluded.title, "
                "description=excluded.description, deadline=excluded.deadline, "
                "reminder_timings=excluded.reminder_timings, reminder_mentions=excluded.reminder_mentions, "
                "reminders_sent=excluded.reminders_sent, status=excluded.status, updated_at=excluded.updated_at",
                (
                    schedule.id,
                    schedule.guild_id,
                    schedule.channel_id,
                    schedule.message_id,
                    schedule.title,
                    schedule.description,
                    schedule.author_id,
                    schedule.author_name,
                    to_timestamp(schedule.deadline),
                    json.dumps(schedule.reminder_timings),
                    json.dumps(schedule.reminder_mentions),
                    json.dumps(schedule.reminders_sent),
                    schedule.status,
                    schedule.total_responses,
                    to_timestamp(schedule.created_at),
                    to_timestamp(schedule.updated_at),
                ),
            )

            await db.execute("DELETE FROM schedule_dates WHERE schedule_id=?", (schedule.id,))
            await db.executemany(
                "INSERT INTO schedule_dates(schedule_id, date_id, datetime, display_order) VALUES(?, ?, ?, ?)",
                [(schedule.id, d.id, d.datetime, index) for index, d in enumerate(schedule.dates)],
            )
            schedule.dates = [
                ScheduleDate(id=d.id, datetime=d.datetime, display_order=index) for index, d in enumerate(schedule.dates)
            ]

            date_ids = schedule.date_ids
            query = "DELETE FROM response_statuses WHERE response_id IN (SELECT id FROM responses WHERE schedule_id=?)"
            if date_ids:
                query += f" AND date_id NOT IN ({', '.join('?' for _ in date_ids)})"
            await db.execute(query, (schedule.id, *date_ids))
        return schedule

    async def find_by_id(self, schedule_id: str, guild_id: str) -> Optional[Schedule]:
        async with self.db.connect() as db:
            cur = await db.execute(
                f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE id=? AND guild_id=?",
                (schedule_id, guild_id),
            )
            row = await cur.fetchone()
            await cur.close()
            if not row:
                return None
            return self._row_to_schedule(row, await self._load_dates(db, schedule_id))

    async def find_by_message_id(self, message_id: str, guild_id: str) -> Optional[Schedule]:
        async with self.db.connect() as db:
            cur = await db.execute(
                f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE message_id=? AND guild_id=?",
                (message_id, guild_id),
            )
            row = await cur.fetchone()
            await cur.close()
            if not row:
                return None
            return self._row_to_schedule(row, await self._load_dates(db, row["id"]))

    async def find_by_deadline_range(
        self, start: datetime, end: datetime, guild_id: Optional[str] = None
    ) -> List[Schedule]:
        """Open schedules whose deadline falls within [start, end], earliest first."""
        query = f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE status=? AND deadline>=? AND deadline<=?"
        params: list = [STATUS_OPEN, to_timestamp(start), to_timestamp(end)]
        if guild_id:
            query += " AND guild_id=?"
            params.append(guild_id)
        query += " ORDER BY deadline ASC"

        async with self.db.connect() as db:
            cur = await db.execute(query, params)
            rows = await cur.fetchall()
            await cur.close()
            return await self._hydrate(db, rows)

    async def find_expired(self, now: datetime, limit: int = 100) -> List[Schedule]:
        async with self.db.connect() as db:
            cur = await db.execute(
                f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE status=? AND deadline IS NOT NULL AND deadline<? "
                "ORDER BY deadline ASC LIMIT ?",
                (STATUS_OPEN, to_timestamp(now), limit),
            )
            rows = await cur.fetchall()
            await cur.close()
            return await self._hydrate(db, rows)

    async def set_message_id(self, schedule_id: str, guild_id: str, message_id: str) -> bool:
        async with self.db.transaction() as db:
            cur = await db.execute(
                "UPDATE schedules SET message_id=?, updated_at=? WHERE id=? AND guild_id=?",
                (message_id, to_timestamp(now_utc()), schedule_id, guild_id),
            )
            return cur.rowcount > 0

    async def close(self, schedule_id: str, guild_id: str) -> bool:
        """Moves an open schedule to closed. Returns False if it was not open."""
        async with self.db.transaction() as db:
            cur = await db.execute(
                "UPDATE schedules SET status=?, updated_at=? WHERE id=? AND guild_id=? AND status=?",
                (STATUS_CLOSED, to_timestamp(now_utc()), schedule_id, guild_id, STATUS_OPEN),
            )
            return cur.rowcount > 0

    async def mark_reminder_sent(self, schedule_id: str, guild_id: str, timing: str) -> List[str]:
        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT reminders_sent FROM schedules WHERE id=? AND guild_id=?",
                (schedule_id, guild_id),
            )
            row = await cur.fetchone()
            await cur.close()
            if not row:
                return []
            sent = _json_list(row["reminders_sent"])
            if timing not in sent:
                sent.append(timing)
                await db.execute(
                    "UPDATE schedules SET reminders_sent=?, updated_at=? WHERE id=? AND guild_id=?",
                    (json.dumps(sent), to_timestamp(now_utc()), schedule_id, guild_id),
                )
            return sent

    async def delete(self, schedule_id: str, guild_id: str) -> bool:
        # dates, responses and their statuses go with the schedule (ON DELETE CASCADE)
        async with self.db.transaction() as db:
            cur = await db.execute(
                "DELETE FROM schedules WHERE id=? AND guild_id=?",
                (schedule_id, guild_id),
            )
            await db.execute(
                "DELETE FROM refresh_state WHERE schedule_id=?",
                (schedule_id,),
            )
            return cur.rowcount > 0
