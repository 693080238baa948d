"""
Domain records shared by the stores, the coordinators and the adapters.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from errors import validation

VoteStatus = Literal["ok", "maybe", "ng"]
VOTE_STATUSES = ("ok", "maybe", "ng")

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"

DEFAULT_REMINDER_TIMINGS = ["3d", "1d", "8h"]

_TIMING_RE = re.compile(r"^(\d+)([mhd]?)$")
_TIMING_UNITS = {"": 1, "m": 1, "h": 60, "d": 60 * 24}


def parse_timing(label: str) -> timedelta:
    """
    Converts a reminder timing label into an offset before the deadline.

    "30m", "8h", "1d" and bare minutes ("1440") are accepted.
    """
    match = _TIMING_RE.match((label or "").strip().lower())
    if not match:
        raise validation(f"invalid reminder timing: {label!r}", timing=label)
    amount, unit = match.groups()
    minutes = int(amount) * _TIMING_UNITS[unit]
    if minutes <= 0:
        raise validation(f"reminder timing must be positive: {label!r}", timing=label)
    return timedelta(minutes=minutes)


class UpdateType(str, Enum):
    VOTE_UPDATE = "VOTE_UPDATE"
    CLOSE_UPDATE = "CLOSE_UPDATE"
    EDIT_UPDATE = "EDIT_UPDATE"


@dataclass(frozen=True)
class ScheduleDate:
    id: str
    datetime: str
    display_order: int = 0


@dataclass
class Schedule:
    id: str
    guild_id: str
    channel_id: str
    title: str
    dates: List[ScheduleDate]
    author_id: str
    author_name: str = ""
    message_id: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    reminder_timings: List[str] = field(default_factory=list)
    reminder_mentions: List[str] = field(default_factory=list)
    reminders_sent: List[str] = field(default_factory=list)
    status: str = STATUS_OPEN
    total_responses: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @property
    def date_ids(self) -> List[str]:
        return [d.id for d in self.dates]

    def pending_timings(self) -> List[str]:
        return [t for t in self.reminder_timings if t not in self.reminders_sent]


@dataclass
class Response:
    schedule_id: str
    user_id: str
    username: str
    date_statuses: Dict[str, str] = field(default_factory=dict)
    display_name: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username


@dataclass
class DateCounts:
    yes: int = 0
    maybe: int = 0
    no: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.maybe + self.no


@dataclass
class Participation:
    fully_available: int = 0
    partially_available: int = 0
    unavailable: int = 0


@dataclass
class Summary:
    schedule: Schedule
    responses: List[Response]
    response_counts: Dict[str, DateCounts]
    total_response_users: int
    optimal_date_id: Optional[str]
    participation: Participation


@dataclass(frozen=True)
class RefreshRequest:
    schedule_id: str
    message_id: str
    channel_id: str
    guild_id: str
    update_type: UpdateType = UpdateType.VOTE_UPDATE
    requested_at: Optional[float] = None

    def to_body(self) -> Dict[str, Any]:
        return {
            "scheduleId": self.schedule_id,
            "messageId": self.message_id,
            "channelId": self.channel_id,
            "guildId": self.guild_id,
            "updateType": self.update_type.value,
        }

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "RefreshRequest":
        try:
            return cls(
                schedule_id=str(body["scheduleId"]),
                message_id=str(body["messageId"]),
                channel_id=str(body["channelId"]),
                guild_id=str(body["guildId"]),
                update_type=UpdateType(body.get("updateType", UpdateType.VOTE_UPDATE.value)),
            )
        except (KeyError, ValueError) as exc:
            raise validation(f"malformed refresh message: {exc}", body=body) from exc


@dataclass(frozen=True)
class ReminderTask:
    schedule_id: str
    guild_id: str
    timing_label: str

    @property
    def dedupe_key(self) -> str:
        return f"{self.schedule_id}:{self.timing_label}"

    def to_body(self) -> Dict[str, Any]:
        return {
            "scheduleId": self.schedule_id,
            "guildId": self.guild_id,
            "timingLabel": self.timing_label,
        }

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "ReminderTask":
        try:
            return cls(
                schedule_id=str(body["scheduleId"]),
                guild_id=str(body["guildId"]),
                timing_label=str(body["timingLabel"]),
            )
        except KeyError as exc:
            raise validation(f"malformed reminder message: missing {exc}", body=body) from exc
