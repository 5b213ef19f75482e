"""Renewal reminder dispatch."""
import logging
from datetime import date
from typing import List, Optional

from bot import keyboards
from core.config import NotificationsConfig
from core.database import Database
from core.errors import ChannelNotConfiguredError
from models.notification import (
    Channel,
    DeliveryStatus,
    NotificationDetails,
    NotificationRecord,
    RenewalFeedback,
    update_renewal_feedback,
)
from models.settings import Settings, UserData
from models.subscription import Subscription, price_number
from services.mailer import EmailNotifier
from services.recurrence import days_until
from services.telegram import TelegramNotifier
from services.template import render_template
from utils.dates import format_ymd, local_today

logger = logging.getLogger(__name__)

CHANNEL_ORDER = (Channel.TELEGRAM, Channel.EMAIL)
WEBHOOK_PATH = "/api/telegram/webhook/{token}"


def notification_already_sent(
    records: List[NotificationRecord],
    subscription: Subscription,
    channel: Channel
) -> bool:
    """
    Check for a successful reminder of the current occurrence.

    The key is (subscription, channel, nextBillingDate). The date only
    moves when the cycle is advanced, so repeated ticks within one
    cycle never send twice.
    """
    for record in records:
        if not record.is_renewal_reminder:
            continue
        if record.channel != channel.value or record.status != DeliveryStatus.SUCCESS.value:
            continue
        if record.details.date != subscription.next_billing_date:
            continue
        same_id = bool(
            record.details.subscription_id
            and subscription.id
            and record.details.subscription_id == subscription.id
        )
        if same_id or record.subscription_name == subscription.name:
            return True
    return False


class ReminderDispatcher:
    """Scans a tenant's subscriptions and sends due renewal reminders."""

    def __init__(
        self,
        db: Database,
        username: str,
        telegram: TelegramNotifier,
        mailer: EmailNotifier,
        config: NotificationsConfig
    ):
        """
        Initialize dispatcher.

        Args:
            db: Database instance
            username: Tenant key
            telegram: Telegram sender
            mailer: E-mail sender
            config: Notifications configuration
        """
        self.db = db
        self.username = username
        self.telegram = telegram
        self.mailer = mailer
        self.config = config
        self._running = False

    @property
    def running(self) -> bool:
        """Check if a tick is in flight."""
        return self._running

    async def tick(self):
        """Run one scan unless the previous one is still running."""
        if self._running:
            logger.debug("Previous reminder tick still running, skipping")
            return

        self._running = True
        try:
            await self.process_renewal_reminders()
        except Exception as e:
            logger.error(f"Reminder tick failed: {e}", exc_info=True)
        finally:
            self._running = False

    async def process_renewal_reminders(self, today: Optional[date] = None) -> int:
        """
        Send due reminders and record every attempt.

        Args:
            today: Reference date (defaults to local today)

        Returns:
            Number of notification records written or updated
        """
        try:
            data = await self.db.load_user_data(self.username)
        except Exception as e:
            logger.error(f"Failed to load data for reminders: {e}", exc_info=True)
            return 0

        if not data.settings.notifications.rules.renewal_reminder:
            return 0

        if today is None:
            today = local_today(data.settings.timezone)

        changed = 0
        for sub in data.subscriptions:
            try:
                changed += await self._process_subscription(data, sub, today)
            except Exception as e:
                logger.error(f"Reminder for subscription {sub.name!r} failed: {e}", exc_info=True)

        if changed:
            try:
                await self.db.save_user_data(self.username, data)
            except Exception as e:
                logger.error(f"Failed to persist notification history: {e}", exc_info=True)

        return changed

    async def _process_subscription(
        self,
        data: UserData,
        sub: Subscription,
        today: date
    ) -> int:
        if not sub.notifications_enabled or not sub.is_active:
            return 0

        days = days_until(sub.next_billing_date, today)
        if days is None:
            return 0

        if days < 0:
            # Missed occurrence: keep the feedback prompt, never send late
            updated = update_renewal_feedback(
                data.notifications,
                sub,
                sub.next_billing_date,
                RenewalFeedback.PENDING,
                only_if_empty=True
            )
            return int(updated)

        rules = data.settings.notifications.rules
        if days > rules.reminder_days:
            return 0

        message = render_template(rules.template, sub)

        written = 0
        for channel in CHANNEL_ORDER:
            record = await self._attempt_channel(data, sub, channel, message)
            if record is not None:
                data.notifications.append(record)
                written += 1
        return written

    async def _attempt_channel(
        self,
        data: UserData,
        sub: Subscription,
        channel: Channel,
        message: str
    ) -> Optional[NotificationRecord]:
        """Send over one channel; None when nothing was attempted."""
        if notification_already_sent(data.notifications, sub, channel):
            return None

        settings = data.settings
        if channel == Channel.TELEGRAM and not self._telegram_ready(settings):
            return None
        if channel == Channel.EMAIL and not self._email_ready(settings):
            return None

        record = NotificationRecord(
            subscription_name=sub.name,
            channel=channel.value,
            details=NotificationDetails(
                date=sub.next_billing_date or '',
                amount=price_number(sub.price),
                currency=sub.currency,
                payment_method=sub.payment_method,
                message=message,
                subscription_id=sub.id or None,
                renewal_feedback=RenewalFeedback.PENDING.value,
            ),
        )

        try:
            if channel == Channel.TELEGRAM:
                await self._send_telegram(settings, sub, message)
            else:
                await self._send_email(settings, message)
        except Exception as e:
            record.status = DeliveryStatus.FAILED.value
            record.details.error_reason = str(e) or 'unknown_error'
            logger.error(f"{channel.value} reminder for {sub.name!r} failed: {record.details.error_reason}")
            return record

        record.status = DeliveryStatus.SUCCESS.value
        logger.info(f"{channel.value} reminder sent for {sub.name!r} ({record.details.date})")
        return record

    @staticmethod
    def _telegram_ready(settings: Settings) -> bool:
        notifications = settings.notifications
        tg = notifications.telegram
        return bool(
            tg.enabled and tg.bot_token and tg.chat_id
            and notifications.rules.allows(Channel.TELEGRAM)
        )

    @staticmethod
    def _email_ready(settings: Settings) -> bool:
        notifications = settings.notifications
        email = notifications.email
        return bool(
            email.enabled and email.email_address
            and notifications.rules.allows(Channel.EMAIL)
        )

    def webhook_url(self, token: str) -> str:
        """Public webhook URL for a bot, or empty when no base URL is set."""
        if not self.config.public_base_url:
            return ''
        return self.config.public_base_url + WEBHOOK_PATH.format(token=token)

    async def _ensure_webhook(self, token: str):
        url = self.webhook_url(token)
        if not url:
            return
        try:
            await self.telegram.ensure_webhook(token, url)
        except Exception as e:
            logger.error(f"Failed to ensure Telegram webhook: {e}")

    async def _send_telegram(self, settings: Settings, sub: Subscription, message: str):
        tg = settings.notifications.telegram
        await self._ensure_webhook(tg.bot_token)
        markup = keyboards.renewal_feedback_keyboard(sub.id or sub.name or 'unknown')
        await self.telegram.send_message(tg.bot_token, tg.chat_id, message, markup)

    async def _send_email(self, settings: Settings, message: str):
        address = settings.notifications.email.email_address
        await self.mailer.send_email_message(address, self.config.email_subject, message)

    async def send_test_message(self, today: Optional[date] = None):
        """
        Send a sample reminder to the tenant's Telegram chat.

        Raises:
            ChannelNotConfiguredError: If Telegram is not set up
            aiogram.exceptions.TelegramAPIError: On API errors
        """
        data = await self.db.load_user_data(self.username)
        tg = data.settings.notifications.telegram
        if not tg.enabled or not tg.bot_token or not tg.chat_id:
            raise ChannelNotConfiguredError("telegram_not_configured")

        sample = Subscription(
            name='测试订阅',
            next_billing_date=format_ymd(today or local_today(data.settings.timezone)),
            price='0.00',
            currency='',
            payment_method='测试支付方式',
        )
        message = render_template(data.settings.notifications.rules.template, sample)

        await self._ensure_webhook(tg.bot_token)
        await self.telegram.send_message(tg.bot_token, tg.chat_id, message, None)
        logger.info("Test reminder sent")
