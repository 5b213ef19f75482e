"""Telegram inline keyboards."""
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton

from models.notification import RenewalFeedback

CALLBACK_SEPARATOR = "|"


def renewal_callback_data(action: RenewalFeedback, subscription_ref: str) -> str:
    """Build callback payload ``action|subscription_ref``."""
    return f"{action.value}{CALLBACK_SEPARATOR}{subscription_ref}"


def renewal_feedback_keyboard(subscription_ref: str) -> InlineKeyboardMarkup:
    """
    Create the "renewed / deprecated" keyboard of a reminder.

    Args:
        subscription_ref: Subscription id (or name for id-less records)

    Returns:
        InlineKeyboardMarkup
    """
    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(
                text="✅ 已续订",
                callback_data=renewal_callback_data(RenewalFeedback.RENEWED, subscription_ref)
            ),
            InlineKeyboardButton(
                text="🛑 已弃用",
                callback_data=renewal_callback_data(RenewalFeedback.DEPRECATED, subscription_ref)
            ),
        ],
    ])
    return keyboard
