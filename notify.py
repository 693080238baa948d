import logging
from typing import Optional, Protocol

from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNetworkError,
    TelegramNotFound,
    TelegramRetryAfter,
    TelegramServerError,
)
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from core import Buttons
from errors import transient

logger = logging.getLogger(__name__)


class NotificationPort(Protocol):
    """
    Outbound messaging.

    False / None means the message can never be delivered (deleted,
    forbidden). Temporary failures raise a TRANSIENT CoreError, with
    ``retry_after`` in its details when the gateway asks for a pause.
    """

    async def edit_message(self, channel_id: str, message_id: str, text: str, buttons: Buttons) -> bool:
        ...

    async def send_message(self, channel_id: str, text: str, buttons: Optional[Buttons] = None) -> Optional[str]:
        ...


def build_keyboard(buttons: Optional[Buttons]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text=text, callback_data=data) for text, data in row]
            for row in buttons
        ]
    )


class TelegramNotifier:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def edit_message(self, channel_id: str, message_id: str, text: str, buttons: Buttons) -> bool:
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=int(channel_id),
                message_id=int(message_id),
                reply_markup=build_keyboard(buttons),
            )
        except TelegramRetryAfter as exc:
            raise transient("rate limited", retry_after=exc.retry_after, channel_id=channel_id) from exc
        except (TelegramNetworkError, TelegramServerError) as exc:
            raise transient(f"telegram unavailable: {exc}", channel_id=channel_id) from exc
        except TelegramBadRequest as exc:
            if "message is not modified" in str(exc):
                return True
            logger.warning("Cannot edit message %s in %s: %s", message_id, channel_id, exc)
            return False
        except (TelegramForbiddenError, TelegramNotFound, TelegramAPIError) as exc:
            logger.warning("Cannot edit message %s in %s: %s", message_id, channel_id, exc)
            return False
        return True

    async def send_message(self, channel_id: str, text: str, buttons: Optional[Buttons] = None) -> Optional[str]:
        try:
            msg = await self.bot.send_message(int(channel_id), text, reply_markup=build_keyboard(buttons))
        except TelegramRetryAfter as exc:
            raise transient("rate limited", retry_after=exc.retry_after, channel_id=channel_id) from exc
        except (TelegramNetworkError, TelegramServerError) as exc:
            raise transient(f"telegram unavailable: {exc}", channel_id=channel_id) from exc
        except TelegramAPIError as exc:
            logger.warning("Cannot send message to %s: %s", channel_id, exc)
            return None
        return str(msg.message_id)
