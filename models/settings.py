"""Tenant settings and the tenant record."""
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.notification import Channel, NotificationRecord, normalize_notifications
from models.subscription import RecordModel, Subscription, validate_lenient
from services.template import DEFAULT_TEMPLATE, PREVIOUS_TEMPLATE, normalize_template
from utils.dates import DEFAULT_TIMEZONE

RENEWAL_REMINDER_RULE = 'renewalReminder'


def default_rule_channels() -> Dict[str, List[str]]:
    return {RENEWAL_REMINDER_RULE: [Channel.TELEGRAM.value, Channel.EMAIL.value]}


class CustomCurrency(BaseModel):
    """Currency the tenant tracks."""

    model_config = ConfigDict(extra='allow')

    code: str = ''
    name: str = ''


class TelegramSettings(RecordModel):
    """Telegram channel settings."""

    enabled: bool = False
    bot_token: str = ''
    chat_id: str = ''

    @field_validator('bot_token', 'chat_id', mode='before')
    @classmethod
    def coerce_str(cls, v):
        """Chat ids are sometimes stored as numbers."""
        return '' if v is None else str(v).strip()


class EmailSettings(RecordModel):
    """E-mail channel settings."""

    enabled: bool = False
    email_address: str = ''


class RuleSettings(RecordModel):
    """Reminder rule toggles."""

    renewal_reminder: bool = True
    reminder_days: int = 3
    channels: Dict[str, List[str]] = Field(default_factory=default_rule_channels)
    template: str = DEFAULT_TEMPLATE

    @field_validator('reminder_days', mode='before')
    @classmethod
    def default_reminder_days(cls, v):
        """Missing window falls back to three days."""
        return 3 if v in (None, '') else v

    @field_validator('channels', mode='before')
    @classmethod
    def merge_channels(cls, v):
        """Overlay stored allow-lists on the defaults."""
        return {**default_rule_channels(), **(v if isinstance(v, dict) else {})}

    @field_validator('template', mode='before')
    @classmethod
    def migrate_template(cls, v):
        """Replace broken and retired built-in templates."""
        if not v or v in (DEFAULT_TEMPLATE, PREVIOUS_TEMPLATE):
            return DEFAULT_TEMPLATE
        return normalize_template(v)

    def allows(self, channel: Channel, rule: str = RENEWAL_REMINDER_RULE) -> bool:
        """Check if a rule may use a channel."""
        return channel.value in (self.channels.get(rule) or [])


class NotificationSettings(RecordModel):
    """Channels and rules for reminders."""

    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    rules: RuleSettings = Field(default_factory=RuleSettings)
    scheduled_task: bool = False


class ExchangeRateApiSettings(RecordModel):
    """Exchange rate provider credential and schedule state."""

    enabled: bool = False
    encrypted_key: str = ''
    last_tested_at: int = 0
    last_run_at0: int = Field(default=0, alias='lastRunAt0')
    last_run_at12: int = Field(default=0, alias='lastRunAt12')

    @property
    def ready(self) -> bool:
        """Enabled, holding a key and tested once."""
        return bool(self.enabled and self.encrypted_key and self.last_tested_at)

    def last_run(self, slot: int) -> int:
        """Last run timestamp of a daily slot (0 or 12)."""
        return self.last_run_at0 if slot == 0 else self.last_run_at12

    def mark_run(self, slot: int, timestamp: int):
        """Stamp a daily slot as run."""
        if slot == 0:
            self.last_run_at0 = timestamp
        elif slot == 12:
            self.last_run_at12 = timestamp


def default_currencies() -> List[CustomCurrency]:
    return [
        CustomCurrency(code='USD', name='US Dollar'),
        CustomCurrency(code='CNY', name='Chinese Yuan'),
        CustomCurrency(code='EUR', name='Euro'),
        CustomCurrency(code='SGD', name='Singapore Dollar'),
    ]


def default_rates() -> Dict[str, float]:
    return {'USD': 1.0, 'CNY': 7.2, 'EUR': 0.92, 'SGD': 1.34}


class Settings(RecordModel):
    """Per-tenant settings. Owned by the settings UI; read-mostly here."""

    language: str = 'zh'
    timezone: str = DEFAULT_TIMEZONE
    custom_currencies: List[CustomCurrency] = Field(default_factory=default_currencies)
    exchange_rates: Dict[str, float] = Field(default_factory=default_rates)
    last_rates_update: int = 0
    exchange_rate_api: ExchangeRateApiSettings = Field(default_factory=ExchangeRateApiSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator('timezone', mode='before')
    @classmethod
    def default_timezone(cls, v):
        return v or DEFAULT_TIMEZONE

    @field_validator('exchange_rate_api', 'notifications', mode='before')
    @classmethod
    def coerce_section(cls, v):
        return v if v is not None else {}

    @property
    def tracked_currency_codes(self) -> List[str]:
        """Currency codes the tenant tracks."""
        return [c.code for c in self.custom_currencies if c.code]


class UserData(BaseModel):
    """The full tenant record: loaded whole, mutated, written back once."""

    subscriptions: List[Subscription] = Field(default_factory=list)
    notifications: List[NotificationRecord] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    @classmethod
    def from_payload(cls, payload: Any) -> 'UserData':
        """
        Build a tenant record from stored JSON, filling defaults.

        Args:
            payload: Decoded JSON document (anything; garbage is tolerated)

        Returns:
            UserData
        """
        safe = payload if isinstance(payload, dict) else {}
        raw_subs = safe.get('subscriptions')
        raw_notifications = safe.get('notifications')
        raw_settings = safe.get('settings')

        subscriptions = []
        for raw_sub in (raw_subs if isinstance(raw_subs, list) else []):
            if not isinstance(raw_sub, dict):
                continue
            sub = validate_lenient(Subscription, raw_sub)
            if sub is not None:
                subscriptions.append(sub)

        notifications = normalize_notifications(
            raw_notifications if isinstance(raw_notifications, list) else [],
            subscriptions
        )
        settings = validate_lenient(Settings, raw_settings if isinstance(raw_settings, dict) else {})
        if settings is None:
            settings = Settings()

        return cls(subscriptions=subscriptions, notifications=notifications, settings=settings)

    def to_payload(self) -> dict:
        """Dump to the stored JSON shape."""
        return {
            'subscriptions': [s.to_record() for s in self.subscriptions],
            'notifications': [n.to_record() for n in self.notifications],
            'settings': self.settings.to_record(),
        }
