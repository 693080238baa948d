"""Per-user, per-date vote storage. Full submissions replace a user's answers, partial ones merge."""

import logging
from typing import Dict, List, Optional

from core import from_timestamp, now_utc, to_timestamp
from db_schema import Database
from errors import conflict, not_found, validation
from models import STATUS_OPEN, VOTE_STATUSES, Response, Summary
from schedule_store import ScheduleStore
from summary import SummaryAggregator

logger = logging.getLogger(__name__)


class ResponseStore:
    def __init__(self, db: Database, schedules: ScheduleStore):
        self.db = db
        self.schedules = schedules
        self.aggregator = SummaryAggregator(schedules, self)

    async def upsert(self, response: Response, guild_id: str, partial: bool = False) -> Response:
        for date_id, status in response.date_statuses.items():
            if status not in VOTE_STATUSES:
                raise validation(f"invalid status {status!r}", date_id=date_id, status=status)

        now = now_utc()
        async with self.db.transaction() as db:
            cur = await db.execute(
                "SELECT id, status FROM schedules WHERE id=? AND guild_id=?",
                (response.schedule_id, guild_id),
            )
            schedule_row = await cur.fetchone()
            await cur.close()
            if not schedule_row:
                raise not_found("Schedule", schedule_id=response.schedule_id, guild_id=guild_id)
            if schedule_row["status"] != STATUS_OPEN:
                raise conflict("schedule is closed", schedule_id=response.schedule_id)

            cur = await db.execute(
                "SELECT date_id FROM schedule_dates WHERE schedule_id=?",
                (response.schedule_id,),
            )
            known = {row["date_id"] for row in await cur.fetchall()}
            await cur.close()
            unknown = sorted(set(response.date_statuses) - known)
            if unknown:
                raise validation("unknown date id", schedule_id=response.schedule_id, date_ids=unknown)

            await db.execute(
                "INSERT INTO responses(schedule_id, guild_id, user_id, username, display_name, updated_at) "
                "VALUES(?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(schedule_id, user_id) DO UPDATE SET "
                "username=excluded.username, display_name=excluded.display_name, updated_at=excluded.updated_at",
                (
                    response.schedule_id,
                    guild_id,
                    response.user_id,
                    response.username,
                    response.display_name,
                    to_timestamp(now),
                ),
            )
            cur = await db.execute(
                "SELECT id FROM responses WHERE schedule_id=? AND user_id=?",
                (response.schedule_id, response.user_id),
            )
            response_id = (await cur.fetchone())["id"]
            await cur.close()

            if not partial:
                await db.execute("DELETE FROM response_statuses WHERE response_id=?", (response_id,))
            await db.executemany(
                "INSERT INTO response_statuses(response_id, date_id, status) VALUES(?, ?, ?) "
                "ON CONFLICT(response_id, date_id) DO UPDATE SET status=excluded.status",
                [(response_id, date_id, status) for date_id, status in response.date_statuses.items()],
            )

            await db.execute(
                "UPDATE schedules SET total_responses=(SELECT COUNT(*) FROM responses WHERE schedule_id=?), "
                "updated_at=? WHERE id=?",
                (response.schedule_id, to_timestamp(now), response.schedule_id),
            )

            cur = await db.execute(
                "SELECT date_id, status FROM response_statuses WHERE response_id=?",
                (response_id,),
            )
            stored = {row["date_id"]: row["status"] for row in await cur.fetchall()}
            await cur.close()

        logger.debug(
            "Stored %s response of %s for schedule %s",
            "partial" if partial else "full", response.user_id, response.schedule_id,
        )
        return Response(
            schedule_id=response.schedule_id,
            user_id=response.user_id,
            username=response.username,
            display_name=response.display_name,
            date_statuses=stored,
            updated_at=from_timestamp(to_timestamp(now)),
        )

    async def find_by_user(self, schedule_id: str, user_id: str, guild_id: str) -> Optional[Response]:
        async with self.db.connect() as db:
            cur = await db.execute(
                "SELECT id, schedule_id, user_id, username, display_name, updated_at FROM responses "
                "WHERE schedule_id=? AND user_id=? AND guild_id=?",
                (schedule_id, user_id, guild_id),
            )
            row = await cur.fetchone()
            await cur.close()
            if not row:
                return None

            cur = await db.execute(
                "SELECT date_id, status FROM response_statuses WHERE response_id=?",
                (row["id"],),
            )
            statuses = {r["date_id"]: r["status"] for r in await cur.fetchall()}
            await cur.close()

        return Response(
            schedule_id=row["schedule_id"],
            user_id=row["user_id"],
            username=row["username"],
            display_name=row["display_name"],
            date_statuses=statuses,
            updated_at=from_timestamp(row["updated_at"]),
        )

    async def find_by_schedule_id(self, schedule_id: str, guild_id: str) -> List[Response]:
        async with self.db.connect() as db:
            cur = await db.execute(
                "SELECT id, schedule_id, user_id, username, display_name, updated_at FROM responses "
                "WHERE schedule_id=? AND guild_id=? ORDER BY updated_at, id",
                (schedule_id, guild_id),
            )
            rows = await cur.fetchall()
            await cur.close()
            if not rows:
                return []

            cur = await db.execute(
                "SELECT rs.response_id, rs.date_id, rs.status FROM response_statuses rs "
                "JOIN responses r ON r.id = rs.response_id WHERE r.schedule_id=? AND r.guild_id=?",
                (schedule_id, guild_id),
            )
            statuses: Dict[int, Dict[str, str]] = {}
            for r in await cur.fetchall():
                statuses.setdefault(r["response_id"], {})[r["date_id"]] = r["status"]
            await cur.close()

        return [
            Response(
                schedule_id=row["schedule_id"],
                user_id=row["user_id"],
                username=row["username"],
                display_name=row["display_name"],
                date_statuses=statuses.get(row["id"], {}),
                updated_at=from_timestamp(row["updated_at"]),
            )
            for row in rows
        ]

    async def delete(self, schedule_id: str, user_id: str, guild_id: str) -> bool:
        async with self.db.transaction() as db:
            cur = await db.execute(
                "DELETE FROM responses WHERE schedule_id=? AND user_id=? AND guild_id=?",
                (schedule_id, user_id, guild_id),
            )
            deleted = cur.rowcount > 0
            await db.execute(
                "UPDATE schedules SET total_responses=(SELECT COUNT(*) FROM responses WHERE schedule_id=?) WHERE id=?",
                (schedule_id, schedule_id),
            )
            return deleted

    async def delete_by_schedule(self, schedule_id: str, guild_id: str) -> int:
        async with self.db.transaction() as db:
            cur = await db.execute(
                "DELETE FROM responses WHERE schedule_id=? AND guild_id=?",
                (schedule_id, guild_id),
            )
            await db.execute(
                "UPDATE schedules SET total_responses=0 WHERE id=? AND guild_id=?",
                (schedule_id, guild_id),
            )
            return cur.rowcount

    async def get_schedule_summary(self, schedule_id: str, guild_id: str) -> Optional[Summary]:
        return await self.aggregator.get_schedule_summary(schedule_id, guild_id)
