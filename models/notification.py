"""Notification history models."""
import uuid
from datetime import date
from enum import Enum
from typing import Any, List, Optional

from pydantic import Field, field_validator

from models.subscription import RecordModel, Subscription, SubscriptionStatus, validate_lenient
from utils.dates import parse_ymd, epoch_ms

RENEWAL_REMINDER = 'renewal_reminder'

# Record type retired by the UI; dropped on load
OBSOLETE_TYPES = {'subscription_change'}
OBSOLETE_DETAIL_KEYS = ('receiver', 'frequency')
# Legacy UI label for "undecided"
LEGACY_PENDING_LABEL = '未确定'


class Channel(str, Enum):
    """Delivery channel."""

    TELEGRAM = 'telegram'
    EMAIL = 'email'


class DeliveryStatus(str, Enum):
    """Outcome of one send attempt."""

    SUCCESS = 'success'
    FAILED = 'failed'


class RenewalFeedback(str, Enum):
    """What the user said happened to a reminded occurrence."""

    PENDING = 'pending'
    RENEWED = 'renewed'
    DEPRECATED = 'deprecated'


class NotificationDetails(RecordModel):
    """Details of a reminder attempt."""

    date: str = ''
    amount: Optional[Any] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    message: Optional[str] = None
    subscription_id: Optional[str] = None
    renewal_feedback: Optional[str] = None
    error_reason: Optional[str] = None

    @field_validator('subscription_id', mode='before')
    @classmethod
    def coerce_subscription_id(cls, v):
        """Older records may carry numeric ids."""
        return None if v in (None, '') else str(v)


class NotificationRecord(RecordModel):
    """One entry of notification history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subscription_name: str = ''
    type: str = RENEWAL_REMINDER
    channel: str = ''
    status: str = ''
    timestamp: int = Field(default_factory=epoch_ms)
    details: NotificationDetails = Field(default_factory=NotificationDetails)

    @field_validator('details', mode='before')
    @classmethod
    def coerce_details(cls, v):
        """Non-object details become empty details."""
        return v if isinstance(v, dict) or isinstance(v, NotificationDetails) else {}

    @property
    def is_renewal_reminder(self) -> bool:
        """Check if this is a renewal reminder record."""
        return self.type == RENEWAL_REMINDER

    def concerns(self, subscription: Subscription) -> bool:
        """
        Check whether this record belongs to a subscription.

        Matches by subscription id when both sides have one, by name
        otherwise.
        """
        if self.details.subscription_id and subscription.id:
            return self.details.subscription_id == subscription.id
        return self.subscription_name == subscription.name


def find_subscription(subscriptions: List[Subscription], record: NotificationRecord) -> Optional[Subscription]:
    """Find the subscription a record was written for."""
    sub_id = record.details.subscription_id
    if sub_id:
        for sub in subscriptions:
            if sub.id == sub_id:
                return sub
    if not record.subscription_name:
        return None
    for sub in subscriptions:
        if sub.name == record.subscription_name:
            return sub
    return None


def normalize_notifications(
    raw_records: List[Any],
    subscriptions: List[Subscription],
    today: Optional[date] = None
) -> List[NotificationRecord]:
    """
    Load notification history, repairing old records.

    - obsolete record types and detail keys are dropped
    - past reminders still marked pending get their feedback from the
      subscription's current status
    - reminders without feedback are marked pending
    - invalid fields revert to their defaults; unreadable records are dropped

    Args:
        raw_records: Records as stored
        subscriptions: Current subscriptions of the tenant
        today: Reference date (defaults to local today)

    Returns:
        List of NotificationRecord
    """
    if today is None:
        today = date.today()

    records = []
    for raw in raw_records or []:
        if isinstance(raw, NotificationRecord):
            raw = raw.to_record()
        if not isinstance(raw, dict) or raw.get('type') in OBSOLETE_TYPES:
            continue

        details = raw.get('details')
        if isinstance(details, dict):
            details = {k: v for k, v in details.items() if k not in OBSOLETE_DETAIL_KEYS}
            raw = {**raw, 'details': details}

        record = validate_lenient(NotificationRecord, raw)
        if record is None:
            continue

        if record.is_renewal_reminder:
            feedback = (record.details.renewal_feedback or '').strip()
            if feedback in ('', RenewalFeedback.PENDING.value, LEGACY_PENDING_LABEL):
                occurrence = parse_ymd(record.details.date)
                if occurrence is not None and occurrence < today:
                    sub = find_subscription(subscriptions, record)
                    if sub is not None and sub.status == SubscriptionStatus.ACTIVE:
                        record.details.renewal_feedback = RenewalFeedback.RENEWED.value
                    elif sub is not None and sub.status == SubscriptionStatus.CANCELLED:
                        record.details.renewal_feedback = RenewalFeedback.DEPRECATED.value
            if not record.details.renewal_feedback:
                record.details.renewal_feedback = RenewalFeedback.PENDING.value

        records.append(record)

    return records


def update_renewal_feedback(
    records: List[NotificationRecord],
    subscription: Subscription,
    date_label: Optional[str],
    feedback: RenewalFeedback,
    only_if_empty: bool = False
) -> bool:
    """
    Set renewal feedback on the reminders of one occurrence.

    Args:
        records: Notification history, updated in place
        subscription: Subscription the reminders were sent for
        date_label: Occurrence date the reminders concern
        feedback: New feedback value
        only_if_empty: Leave records that already have feedback alone

    Returns:
        True if any record changed
    """
    if not date_label:
        return False

    updated = False
    for record in records:
        if not record.is_renewal_reminder or record.details.date != date_label:
            continue
        if not record.concerns(subscription):
            continue
        if only_if_empty and record.details.renewal_feedback:
            continue
        record.details.renewal_feedback = feedback.value
        if not record.details.subscription_id and subscription.id:
            record.details.subscription_id = subscription.id
        updated = True
    return updated
