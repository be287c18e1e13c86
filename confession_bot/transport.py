import asyncio
import logging
from typing import Optional, Union

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError, TelegramRetryAfter
from aiogram.types import InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove

logger = logging.getLogger(__name__)

ChatId = Union[int, str]
Markup = Union[InlineKeyboardMarkup, ReplyKeyboardMarkup, ReplyKeyboardRemove]


class Transport:
    """Outbound side of the chat interface."""

    async def send_message(self, chat_id: ChatId, text: str,
                           reply_markup: Optional[Markup] = None) -> Optional[int]:
        """Send ``text`` and return the id of the sent message."""
        raise NotImplementedError

    async def answer_callback(self, callback_id: str, text: Optional[str] = None,
                              show_alert: bool = False) -> None:
        raise NotImplementedError

    async def edit_message_buttons(self, chat_id: ChatId, message_id: int,
                                   reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
        raise NotImplementedError


class TelegramTransport(Transport):
    def __init__(self, bot: Bot, max_retries: int = 3):
        self.bot = bot
        self.max_retries = max_retries

    async def send_message(self, chat_id, text, reply_markup=None):
        for attempt in range(self.max_retries + 1):
            try:
                sent_message = await self.bot.send_message(
                    chat_id, text,
                    reply_markup=reply_markup,
                    disable_web_page_preview=True
                )
                return sent_message.message_id
            except TelegramRetryAfter as e:
                if attempt == self.max_retries:
                    raise
                logger.warning(f"Flood control for {chat_id}. Retrying after {e.retry_after}s")
                await asyncio.sleep(e.retry_after)
        return None

    async def answer_callback(self, callback_id, text=None, show_alert=False):
        try:
            await self.bot.answer_callback_query(callback_id, text=text, show_alert=show_alert)
        except TelegramBadRequest as e:
            # Callback ids expire after a short while
            logger.warning(f"Could not answer callback {callback_id}: {e}")

    async def edit_message_buttons(self, chat_id, message_id, reply_markup=None):
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=reply_markup
            )
        except TelegramBadRequest as e:
            if "message is not modified" in str(e).lower():
                logger.debug(f"Buttons of message {message_id} already up to date")
            elif "message to edit not found" in str(e).lower():
                logger.warning(f"Msg {message_id} not found in {chat_id}. Maybe deleted?")
            else:
                raise


def is_unreachable_user(error: Exception) -> bool:
    """True for errors meaning the user blocked the bot or no longer exists."""
    if not isinstance(error, (TelegramForbiddenError, TelegramBadRequest)):
        return False
    text = str(error).lower()
    return any(marker in text for marker in ("bot was blocked", "user is deactivated", "chat not found"))
