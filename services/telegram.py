"""Telegram Bot API access for reminders and callback acknowledgements."""
import asyncio
import logging
from typing import Dict, Optional, Union

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup, LinkPreviewOptions, Message

from core.logger import scrub_token

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


class TelegramNotifier:
    """Sends messages through bots whose tokens live in tenant settings."""

    def __init__(self, debug: bool = False):
        """
        Initialize notifier.

        Args:
            debug: Log every API call
        """
        self.debug = debug
        self._bots: Dict[str, Bot] = {}

    def _get_bot(self, token: str) -> Bot:
        """Get or create the Bot for a token."""
        bot = self._bots.get(token)
        if bot is None:
            bot = Bot(token=token)
            self._bots[token] = bot
        return bot

    async def send_message(
        self,
        token: str,
        chat_id: ChatId,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None
    ) -> Message:
        """
        Send a plain text message.

        Args:
            token: Bot token
            chat_id: Destination chat
            text: Message text
            reply_markup: Optional inline keyboard

        Returns:
            Sent message

        Raises:
            aiogram.exceptions.TelegramAPIError: On API errors
        """
        bot = self._get_bot(token)
        message = await bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_markup=reply_markup,
            link_preview_options=LinkPreviewOptions(is_disabled=True)
        )

        if self.debug:
            logger.debug(
                f"sendMessage ok: bot={scrub_token(token)} chat={chat_id} "
                f"markup={reply_markup is not None}"
            )
        return message

    async def ensure_webhook(self, token: str, url: str):
        """Point the bot's webhook at url unless it already does."""
        bot = self._get_bot(token)
        info = await bot.get_webhook_info()
        if info.url == url:
            return

        await bot.set_webhook(url=url, allowed_updates=['callback_query'])
        logger.info(f"Webhook for bot {scrub_token(token)} set")

    async def answer_callback(self, token: str, callback_query_id: str, text: str):
        """Show a toast for a callback query, ignoring expired queries."""
        bot = self._get_bot(token)
        try:
            await bot.answer_callback_query(
                callback_query_id=callback_query_id,
                text=text,
                show_alert=False
            )
        except TelegramBadRequest as e:
            if "query is too old" in str(e):
                logger.debug(f"Callback query too old, ignoring: {e}")
            else:
                raise

    async def clear_inline_keyboard(self, token: str, chat_id: ChatId, message_id: int):
        """Remove the inline keyboard from a sent message."""
        bot = self._get_bot(token)
        try:
            await bot.edit_message_reply_markup(
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=InlineKeyboardMarkup(inline_keyboard=[])
            )
        except TelegramBadRequest as e:
            if "message is not modified" in str(e):
                logger.debug("Keyboard already removed")
            else:
                raise

    async def close(self):
        """Close all bot sessions."""
        bots = list(self._bots.values())
        self._bots.clear()
        if bots:
            await asyncio.gather(
                *(bot.session.close() for bot in bots),
                return_exceptions=True
            )
