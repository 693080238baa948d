import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from aiogram import Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.types import CallbackQuery, Message
from aiogram.utils.text_decorations import html_decoration

from core import STATUS_ICONS, format_card, load_settings, vote_buttons
from errors import AppError, CoreError, ErrorKind, validation
from notify import TelegramNotifier, build_keyboard
from queues import QueueConsumer
from reminders import ReminderDispatcher, ReminderScheduler
from service import ScheduleService, build_components

logger = logging.getLogger(__name__)

router = Router()

USAGE = (
    "Usage:\n"
    "/new Title\n"
    "2026-11-01 19:00\n"
    "2026-11-02 19:00\n"
    "deadline: 2026-10-30 18:00\n"
    "remind: 1d, 8h"
)

ERROR_MESSAGES = {
    ErrorKind.NOT_FOUND: "Schedule not found.",
    ErrorKind.VALIDATION: "Invalid input: {message}",
    ErrorKind.CONFLICT: "This schedule is closed.",
    ErrorKind.FORBIDDEN: "Only the author can do that.",
    ErrorKind.TRANSIENT: "Busy right now, please try again in a moment.",
}


def error_text(error: Optional[AppError]) -> str:
    if error is None:
        return ERROR_MESSAGES[ErrorKind.TRANSIENT]
    return ERROR_MESSAGES[error.kind].format(message=error.message)


def parse_new_command(text: str, tz: ZoneInfo) -> Tuple[str, List[str], Optional[datetime], Optional[List[str]]]:
    """
    Parses the body of /new: first line is the title, then one candidate date
    per line. Optional `deadline:` and `remind:` lines may appear anywhere.
    """
    lines = [line.strip() for line in (text or "").splitlines()]
    if lines and lines[0].startswith("/new"):
        lines[0] = lines[0].split(maxsplit=1)[1] if " " in lines[0] else ""
    lines = [line for line in lines if line]
    if not lines:
        raise validation("title is required")

    title, dates = lines[0], []
    deadline = None
    timings = None
    for line in lines[1:]:
        key, _, value = line.partition(":")
        key = key.strip().lower()
        if key == "deadline" and value:
            try:
                deadline = datetime.strptime(value.strip(), "%Y-%m-%d %H:%M").replace(tzinfo=tz)
            except ValueError as exc:
                raise validation("deadline must look like YYYY-MM-DD HH:MM") from exc
        elif key == "remind" and value:
            timings = [t.strip() for t in value.split(",") if t.strip()]
        else:
            dates.append(line)
    return title, dates, deadline, timings


@router.message(Command("new"))
async def cmd_new(message: Message, service: ScheduleService, tz: ZoneInfo):
    if message.chat.type not in ("group", "supergroup"):
        await message.answer("This command works in groups and supergroups.")
        return
    try:
        title, dates, deadline, timings = parse_new_command(message.text, tz)
    except CoreError as exc:
        logger.info("Bad /new from %s: %s", message.from_user.id, exc)
        await message.answer(f"{html_decoration.quote(error_text(exc.error))}\n\n{USAGE}")
        return

    chat_id = str(message.chat.id)
    created = await service.create_schedule(
        guild_id=chat_id,
        channel_id=chat_id,
        title=title,
        dates=dates,
        author_id=str(message.from_user.id),
        author_name=message.from_user.full_name,
        deadline=deadline,
        reminder_timings=timings,
    )
    if not created.success:
        await message.answer(f"{html_decoration.quote(error_text(created.error))}\n\n{USAGE}")
        return

    schedule = created.data
    summary = await service.get_summary(schedule.id, chat_id)
    if not summary.success:
        await message.answer(html_decoration.quote(error_text(summary.error)))
        return
    card = await message.answer(
        format_card(summary.data, tz),
        reply_markup=build_keyboard(vote_buttons(schedule)),
    )
    attached = await service.attach_message(schedule.id, chat_id, str(card.message_id))
    if not attached.success:
        logger.error("Cannot attach message %s to schedule %s", card.message_id, schedule.id)


@router.callback_query(F.data.startswith("vote:"))
async def on_vote(cb: CallbackQuery, service: ScheduleService):
    try:
        _, schedule_id, date_id, status = cb.data.split(":")
    except ValueError:
        await cb.answer("Unknown button")
        return

    user = cb.from_user
    result = await service.submit_date_status(
        schedule_id=schedule_id,
        guild_id=str(cb.message.chat.id),
        user_id=str(user.id),
        username=user.username or user.full_name,
        date_id=date_id,
        status=status,
        display_name=user.full_name,
    )
    if not result.success:
        await cb.answer(error_text(result.error), show_alert=True)
        return
    await cb.answer(f"Saved {STATUS_ICONS[status]}")


@router.callback_query(F.data.startswith("close:"))
async def on_close(cb: CallbackQuery, service: ScheduleService):
    schedule_id = cb.data.split(":", 1)[1]
    result = await service.close_schedule(schedule_id, str(cb.message.chat.id), str(cb.from_user.id))
    if not result.success:
        await cb.answer(error_text(result.error), show_alert=True)
        return
    await cb.answer("Closed 🔒")


@router.message(Command("summary"))
async def cmd_summary(message: Message, service: ScheduleService, tz: ZoneInfo):
    """Reply to a schedule card with /summary to see who answered what."""
    reply = message.reply_to_message
    if not reply:
        await message.answer("Reply to a schedule message with /summary.")
        return
    chat_id = str(message.chat.id)
    schedule = await service.schedules.find_by_message_id(str(reply.message_id), chat_id)
    if schedule is None:
        await message.answer(ERROR_MESSAGES[ErrorKind.NOT_FOUND])
        return
    result = await service.get_summary(schedule.id, chat_id)
    if not result.success:
        await message.answer(html_decoration.quote(error_text(result.error)))
        return

    summary = result.data
    lines = [format_card(summary, tz), ""]
    for response in summary.responses:
        marks = " ".join(
            STATUS_ICONS.get(response.date_statuses.get(d.id), "·") for d in summary.schedule.dates
        )
        lines.append(f"{html_decoration.quote(response.name)}: {marks}")
    p = summary.participation
    lines.append(f"\nAll dates: {p.fully_available} · Some: {p.partially_available} · None: {p.unavailable}")
    await message.answer("\n".join(lines))


async def main():
    settings = load_settings()
    if not settings.bot_token:
        raise RuntimeError("Set BOT_TOKEN env var")
    logging.basicConfig(level=settings.log_level)

    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    notifier = TelegramNotifier(bot)
    app = build_components(settings, notifier)
    await app.db.init()

    dispatcher = ReminderDispatcher(app.schedules, app.responses, notifier, settings.tz)
    scheduler = ReminderScheduler(
        app.schedules,
        app.reminder_queue,
        app.coordinator,
        lookahead=timedelta(hours=settings.reminder_lookahead_hours),
        batch_size=settings.reminder_batch_size,
        batch_delay=settings.reminder_batch_delay,
    )
    workers = [
        asyncio.create_task(
            QueueConsumer(app.refresh_queue, app.coordinator.handle, app.coordinator.release).run_forever()
        ),
        asyncio.create_task(QueueConsumer(app.reminder_queue, dispatcher.handle).run_forever()),
        asyncio.create_task(scheduler.run_periodic(settings.reminder_tick_seconds)),
    ]

    dp = Dispatcher(service=app.service, tz=settings.tz)
    dp.include_router(router)

    logger.info("Bot started")
    try:
        await dp.start_polling(bot)
    finally:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
