"""
Vote aggregation: per-date counts, participation and the optimal date.
"""

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from models import DateCounts, Participation, Response, Schedule, Summary

if TYPE_CHECKING:
    from response_store import ResponseStore
    from schedule_store import ScheduleStore


def count_responses(schedule: Schedule, responses: Iterable[Response]) -> Dict[str, DateCounts]:
    counts = {date.id: DateCounts() for date in schedule.dates}
    for response in responses:
        for date_id, status in response.date_statuses.items():
            bucket = counts.get(date_id)
            if bucket is None:
                continue
            if status == "ok":
                bucket.yes += 1
            elif status == "maybe":
                bucket.maybe += 1
            elif status == "ng":
                bucket.no += 1
    return counts


def pick_optimal_date(schedule: Schedule, counts: Dict[str, DateCounts]) -> Optional[str]:
    """
    Most `yes` votes wins; ties go to most `yes + maybe`, then to the date
    shown first.
    """
    best_id = None
    best_key = None
    for date in sorted(schedule.dates, key=lambda d: d.display_order):
        c = counts[date.id]
        key = (c.yes, c.yes + c.maybe)
        if best_key is None or key > best_key:
            best_id, best_key = date.id, key
    return best_id


def participation(schedule: Schedule, responses: Iterable[Response]) -> Participation:
    result = Participation()
    date_ids = schedule.date_ids
    for response in responses:
        statuses = [response.date_statuses.get(d) for d in date_ids]
        answered = [s for s in statuses if s is not None]
        if not answered:
            continue
        if date_ids and all(s == "ok" for s in statuses):
            result.fully_available += 1
        elif any(s in ("ok", "maybe") for s in answered):
            result.partially_available += 1
        else:
            result.unavailable += 1
    return result


def summarize(schedule: Schedule, responses: List[Response]) -> Summary:
    known = set(schedule.date_ids)
    voters = [r for r in responses if any(d in known for d in r.date_statuses)]
    counts = count_responses(schedule, voters)
    return Summary(
        schedule=schedule,
        responses=voters,
        response_counts=counts,
        total_response_users=len(voters),
        optimal_date_id=pick_optimal_date(schedule, counts) if voters else None,
        participation=participation(schedule, voters),
    )


class SummaryAggregator:
    def __init__(self, schedules: "ScheduleStore", responses: "ResponseStore"):
        self.schedules = schedules
        self.responses = responses

    async def get_schedule_summary(self, schedule_id: str, guild_id: str) -> Optional[Summary]:
        schedule = await self.schedules.find_by_id(schedule_id, guild_id)
        if schedule is None:
            return None
        responses = await self.responses.find_by_schedule_id(schedule_id, guild_id)
        return summarize(schedule, responses)
