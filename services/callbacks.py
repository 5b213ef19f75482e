"""Inline keyboard feedback from renewal reminders."""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bot.keyboards import CALLBACK_SEPARATOR
from core.database import Database
from core.errors import UnsupportedActionError
from models.notification import RenewalFeedback, update_renewal_feedback
from models.subscription import Subscription, SubscriptionStatus
from services.recurrence import advance_label
from services.telegram import TelegramNotifier
from services.template import extract_name_from_rendered
from utils.dates import format_ymd, local_today

logger = logging.getLogger(__name__)

TOAST_INVALID_ACTION = '无效操作'
TOAST_NOT_FOUND = '找不到对应的订阅记录'
TOAST_DONE = {
    RenewalFeedback.RENEWED: '已标记为已续订',
    RenewalFeedback.DEPRECATED: '已标记为已弃用',
}

SUPPORTED_ACTIONS = (RenewalFeedback.RENEWED, RenewalFeedback.DEPRECATED)


class _Loose(BaseModel):
    model_config = ConfigDict(extra='ignore')


class CallbackChat(_Loose):
    id: Optional[str] = None

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)


class CallbackMessage(_Loose):
    message_id: Optional[int] = None
    text: Optional[str] = None
    chat: Optional[CallbackChat] = None


class CallbackQuery(_Loose):
    id: str = ''
    data: Optional[str] = None
    message: Optional[CallbackMessage] = None
    from_user: Optional[dict] = Field(default=None, alias='from')


class TelegramUpdate(_Loose):
    """The parts of a Telegram update the resolver reads."""

    update_id: Optional[int] = None
    callback_query: Optional[CallbackQuery] = None


@dataclass
class ActionResult:
    """Outcome of applying a feedback action to a subscription."""

    action: RenewalFeedback
    previous_next_billing_date: Optional[str]
    status_changed: bool


@dataclass
class CallbackOutcome:
    """Result of handling one webhook update."""

    ok: bool
    message: str = ''
    http_status: int = 200


def parse_callback_data(data: Optional[str]) -> Tuple[str, str]:
    """
    Split ``action|id`` callback data.

    The id keeps any further separators.
    """
    action, _, raw_id = (data or '').partition(CALLBACK_SEPARATOR)
    return action.strip(), raw_id.strip()


def resolve_subscription(
    subscriptions: List[Subscription],
    raw_id: str,
    text: Optional[str],
    template: Optional[str]
) -> Optional[Subscription]:
    """
    Find the subscription a callback refers to.

    Tries the id, then an exact name match on the raw id, then a name
    extracted from the reminder text with the tenant's template.
    """
    if raw_id:
        for sub in subscriptions:
            if sub.id and sub.id == raw_id:
                return sub
        for sub in subscriptions:
            if sub.name and sub.name == raw_id:
                return sub

    name = extract_name_from_rendered(template, text)
    if name:
        for sub in subscriptions:
            if sub.name == name:
                return sub
    return None


def apply_action(subscription: Subscription, action, today: Optional[date] = None) -> ActionResult:
    """
    Apply renewed/deprecated feedback to a subscription in place.

    Args:
        subscription: Subscription to mutate
        action: RenewalFeedback value or its string form
        today: Local date stamped into ``cancelled_at``

    Returns:
        ActionResult carrying the pre-action billing date

    Raises:
        UnsupportedActionError: If the action is unknown
    """
    try:
        feedback = RenewalFeedback(action)
    except ValueError:
        raise UnsupportedActionError(f"unsupported_action: {action}")
    if feedback not in SUPPORTED_ACTIONS:
        raise UnsupportedActionError(f"unsupported_action: {action}")

    previous = subscription.next_billing_date
    old_status = subscription.status

    if feedback == RenewalFeedback.RENEWED:
        subscription.status = SubscriptionStatus.ACTIVE.value
        advanced = advance_label(previous, subscription.frequency)
        if advanced:
            subscription.next_billing_date = advanced
    else:
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.next_billing_date = ''

    status_changed = subscription.status != old_status
    if status_changed:
        if subscription.status == SubscriptionStatus.CANCELLED:
            subscription.cancelled_at = format_ymd(today or date.today())
        else:
            subscription.cancelled_at = None

    return ActionResult(
        action=feedback,
        previous_next_billing_date=previous,
        status_changed=status_changed,
    )


class CallbackService:
    """Handles inline keyboard presses delivered through the webhook."""

    def __init__(self, db: Database, username: str, telegram: TelegramNotifier):
        self.db = db
        self.username = username
        self.telegram = telegram

    async def _answer(self, token: str, query: CallbackQuery, text: str):
        if not query.id:
            return
        try:
            await self.telegram.answer_callback(token, query.id, text)
        except Exception as e:
            logger.error(f"Failed to answer callback query: {e}")

    async def _clear_keyboard(self, token: str, message: Optional[CallbackMessage]):
        if message is None or message.chat is None or not message.chat.id or message.message_id is None:
            return
        try:
            await self.telegram.clear_inline_keyboard(token, message.chat.id, message.message_id)
        except Exception as e:
            logger.error(f"Failed to clear inline keyboard: {e}")

    async def handle_update(self, token: str, update) -> CallbackOutcome:
        """
        Handle one Telegram update.

        Args:
            token: Bot token taken from the webhook path
            update: Update payload (dict or TelegramUpdate)

        Returns:
            CallbackOutcome
        """
        data = await self.db.load_user_data(self.username)
        bot_token = data.settings.notifications.telegram.bot_token
        if not bot_token or token != bot_token:
            logger.warning("Webhook called with an unknown bot token")
            return CallbackOutcome(ok=False, message='invalid_token', http_status=403)

        if not isinstance(update, TelegramUpdate):
            try:
                update = TelegramUpdate.model_validate(update if isinstance(update, dict) else {})
            except ValidationError as e:
                logger.warning(f"Ignoring malformed update: {e}")
                return CallbackOutcome(ok=True, message='ignored')

        query = update.callback_query
        if query is None or not query.data:
            return CallbackOutcome(ok=True, message='ignored')

        action, raw_id = parse_callback_data(query.data)
        if action not in {a.value for a in SUPPORTED_ACTIONS}:
            await self._answer(token, query, TOAST_INVALID_ACTION)
            return CallbackOutcome(ok=False, message='invalid_action')

        text = query.message.text if query.message else None
        sub = resolve_subscription(
            data.subscriptions,
            raw_id,
            text,
            data.settings.notifications.rules.template
        )
        if sub is None:
            logger.info(f"Callback for unknown subscription {raw_id!r}")
            await self._answer(token, query, TOAST_NOT_FOUND)
            return CallbackOutcome(ok=False, message='subscription_not_found')

        result = apply_action(sub, action, local_today(data.settings.timezone))
        update_renewal_feedback(
            data.notifications,
            sub,
            result.previous_next_billing_date,
            result.action
        )
        await self.db.save_user_data(self.username, data)
        logger.info(f"Subscription {sub.name!r} marked {result.action.value}")

        await self._answer(token, query, TOAST_DONE[result.action])
        await self._clear_keyboard(token, query.message)
        return CallbackOutcome(ok=True, message='ok')
