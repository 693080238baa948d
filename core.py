import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from aiogram.utils.markdown import hbold
from aiogram.utils.text_decorations import html_decoration
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from errors import CoreError
from models import DEFAULT_REMINDER_TIMINGS, Schedule, Summary, parse_timing

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"))

STATUS_ICONS = {"ok": "✅", "maybe": "❔", "ng": "❌"}

Buttons = List[List[Tuple[str, str]]]


class QueueSettings(BaseModel):
    max_batch_size: int = Field(10, ge=1)
    max_batch_wait: float = Field(5.0, ge=0)
    max_retries: int = Field(3, ge=0)
    retry_delay: float = Field(2.0, ge=0)
    visibility_timeout: float = Field(60.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)


class Settings(BaseModel):
    bot_token: Optional[str] = None
    db_path: str = os.path.join(BASE_DIR, "schedule_bot.sqlite3")
    timezone: str = "Europe/Vilnius"
    log_level: str = "INFO"

    refresh_debounce_seconds: float = Field(5.0, ge=0)
    refresh_stale_seconds: float = Field(120.0, gt=0)
    refresh_queue: QueueSettings = QueueSettings()

    reminder_tick_seconds: float = Field(600.0, gt=0)
    reminder_lookahead_hours: float = Field(24 * 7, gt=0)
    reminder_batch_size: int = Field(20, ge=1)
    reminder_batch_delay: float = Field(0.5, ge=0)
    default_reminder_timings: List[str] = list(DEFAULT_REMINDER_TIMINGS)
    reminder_queue: QueueSettings = QueueSettings(max_batch_size=20, max_batch_wait=10.0)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("default_reminder_timings")
    @classmethod
    def _valid_timings(cls, value: List[str]) -> List[str]:
        for label in value:
            try:
                parse_timing(label)
            except CoreError as exc:
                raise ValueError(exc.error.message) from exc
        return value

    @model_validator(mode="after")
    def _lookahead_covers_timings(self) -> "Settings":
        longest = max((parse_timing(t) for t in self.default_reminder_timings), default=None)
        if longest and longest.total_seconds() > self.reminder_lookahead_hours * 3600:
            raise ValueError("REMINDER_LOOKAHEAD_HOURS is shorter than the longest reminder timing")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _env_list(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings() -> Settings:
    """Builds Settings from the environment; invalid values stop startup."""
    env = {
        "bot_token": os.getenv("BOT_TOKEN"),
        "db_path": os.getenv("DB_PATH"),
        "timezone": os.getenv("TZ_NAME"),
        "log_level": os.getenv("LOG_LEVEL"),
        "refresh_debounce_seconds": os.getenv("REFRESH_DEBOUNCE_SECONDS"),
        "refresh_stale_seconds": os.getenv("REFRESH_STALE_SECONDS"),
        "reminder_tick_seconds": os.getenv("REMINDER_TICK_SECONDS"),
        "reminder_lookahead_hours": os.getenv("REMINDER_LOOKAHEAD_HOURS"),
        "reminder_batch_size": os.getenv("REMINDER_BATCH_SIZE"),
        "reminder_batch_delay": os.getenv("REMINDER_BATCH_DELAY"),
        "default_reminder_timings": _env_list("DEFAULT_REMINDER_TIMINGS"),
    }
    for prefix, key in (("REFRESH_QUEUE", "refresh_queue"), ("REMINDER_QUEUE", "reminder_queue")):
        queue = {
            "max_batch_size": os.getenv(f"{prefix}_MAX_BATCH_SIZE"),
            "max_batch_wait": os.getenv(f"{prefix}_MAX_BATCH_WAIT"),
            "max_retries": os.getenv(f"{prefix}_MAX_RETRIES"),
        }
        queue = {k: v for k, v in queue.items() if v is not None}
        if queue:
            defaults = Settings.model_fields[key].default.model_dump()
            env[key] = {**defaults, **queue}

    try:
        return Settings(**{k: v for k, v in env.items() if v is not None})
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_timestamp(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        raise ValueError("naive datetime, timezone required")
    return int(dt.timestamp())


def format_dt(dt: datetime, tz: Optional[ZoneInfo] = None) -> str:
    if tz is not None:
        dt = dt.astimezone(tz)
    return dt.strftime("%d-%m-%Y %H:%M")


def format_card(summary: Summary, tz: Optional[ZoneInfo] = None) -> str:
    schedule = summary.schedule
    text = f"📅 {hbold(schedule.title)}"
    if (schedule.description or "").strip():
        text += f"\n📝 {html_decoration.quote(schedule.description.strip())}"
    if schedule.deadline:
        text += f"\n⏰ Deadline: {format_dt(schedule.deadline, tz)}"
    if not schedule.is_open:
        text += "\n🔒 Closed"

    lines = []
    for date in schedule.dates:
        counts = summary.response_counts[date.id]
        star = "⭐ " if date.id == summary.optimal_date_id else ""
        lines.append(
            f"{star}{html_decoration.quote(date.datetime)}  "
            f"{STATUS_ICONS['ok']}{counts.yes} {STATUS_ICONS['maybe']}{counts.maybe} {STATUS_ICONS['ng']}{counts.no}"
        )
    text += "\n\n" + "\n".join(lines)
    text += f"\n\n👥 Responses: {summary.total_response_users}"
    return text


def format_reminder(
    schedule: Schedule, timing_label: str, responded: int, tz: Optional[ZoneInfo] = None, link: Optional[str] = None
) -> str:
    text = f"⏳ {hbold(schedule.title)}: {timing_label} left until the deadline"
    if schedule.deadline:
        text += f" ({format_dt(schedule.deadline, tz)})"
    text += f".\n👥 Responses so far: {responded}"
    if schedule.reminder_mentions:
        text += "\n" + " ".join(html_decoration.quote(m) for m in schedule.reminder_mentions[:30])
    if link:
        text += f"\n\nPoll: {link}"
    return text


def format_closing(summary: Summary, link: Optional[str] = None) -> str:
    schedule = summary.schedule
    text = f"🔒 {hbold(schedule.title)} is closed."
    best = next((d for d in schedule.dates if d.id == summary.optimal_date_id), None)
    if best is None:
        text += "\nNobody answered."
    else:
        counts = summary.response_counts[best.id]
        text += (
            f"\n⭐ Best date: {html_decoration.quote(best.datetime)}  "
            f"{STATUS_ICONS['ok']}{counts.yes} {STATUS_ICONS['maybe']}{counts.maybe} {STATUS_ICONS['ng']}{counts.no}"
        )
    text += f"\n👥 Responses: {summary.total_response_users}"
    if link:
        text += f"\n\nPoll: {link}"
    return text


def vote_buttons(schedule: Schedule) -> Buttons:
    if not schedule.is_open:
        return []
    rows: Buttons = []
    for date in schedule.dates:
        rows.append([
            (f"{STATUS_ICONS[status]} {date.datetime}" if status == "ok" else STATUS_ICONS[status],
             f"vote:{schedule.id}:{date.id}:{status}")
            for status in ("ok", "maybe", "ng")
        ])
    rows.append([("🔒 Close", f"close:{schedule.id}")])
    return rows


def build_message_link(chat_id, message_id) -> Optional[str]:
    chat = str(chat_id)
    if message_id and chat.startswith("-100") and chat[4:].isdigit():
        return f"https://t.me/c/{int(chat[4:])}/{message_id}"
    return None
