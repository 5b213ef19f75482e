"""Shared fixtures: temporary database and fake channel senders."""
from datetime import date, timedelta

import pytest

from core.config import NotificationsConfig
from core.database import Database
from models.settings import UserData

USERNAME = "admin"
BOT_TOKEN = "123456:ABCDEFtestbottoken"
CHAT_ID = "987654"


class FakeTelegram:
    """Stands in for TelegramNotifier and records every call."""

    def __init__(self):
        self.sent = []
        self.webhooks = []
        self.answers = []
        self.cleared = []
        self.send_error = None
        self.webhook_error = None
        self.answer_error = None

    async def send_message(self, token, chat_id, text, reply_markup=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({
            'token': token,
            'chat_id': chat_id,
            'text': text,
            'reply_markup': reply_markup,
        })

    async def ensure_webhook(self, token, url):
        if self.webhook_error is not None:
            raise self.webhook_error
        self.webhooks.append((token, url))

    async def answer_callback(self, token, callback_query_id, text):
        if self.answer_error is not None:
            raise self.answer_error
        self.answers.append((callback_query_id, text))

    async def clear_inline_keyboard(self, token, chat_id, message_id):
        self.cleared.append((chat_id, message_id))

    async def close(self):
        pass


class FakeMailer:
    """Stands in for EmailNotifier."""

    def __init__(self):
        self.sent = []
        self.error = None

    @property
    def configured(self):
        return True

    async def send_email_message(self, to, subject, text):
        if self.error is not None:
            raise self.error
        self.sent.append({'to': to, 'subject': subject, 'text': text})


class FakeRateClient:
    """Stands in for ExchangeRateClient."""

    def __init__(self, rates=None):
        self.rates = rates if rates is not None else {'USD': 1, 'CNY': 7.1, 'EUR': 0.9, 'SGD': 1.3, 'JPY': 150}
        self.error = None
        self.keys = []

    async def fetch_usd_rates(self, api_key):
        self.keys.append(api_key)
        if self.error is not None:
            raise self.error
        return self.rates


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "subm.db"))
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def telegram():
    return FakeTelegram()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def rate_client():
    return FakeRateClient()


@pytest.fixture
def notifications_config():
    return NotificationsConfig()


@pytest.fixture
def today():
    return date.today()


def make_subscription(**overrides):
    """Subscription record as the UI stores it, due in two days."""
    record = {
        'id': 'sub-1',
        'name': 'Netflix',
        'price': 15.99,
        'currency': 'USD',
        'frequency': 'Monthly',
        'startDate': '2024-01-20',
        'nextBillingDate': (date.today() + timedelta(days=2)).isoformat(),
        'status': 'active',
        'notificationsEnabled': True,
        'paymentMethod': 'Visa',
    }
    record.update(overrides)
    return record


def make_settings(telegram=True, email=True, **overrides):
    """Settings with both channels configured."""
    settings = {
        'timezone': 'Asia/Shanghai',
        'notifications': {
            'telegram': {'enabled': telegram, 'botToken': BOT_TOKEN, 'chatId': CHAT_ID},
            'email': {'enabled': email, 'emailAddress': 'me@example.com'},
            'rules': {'renewalReminder': True, 'reminderDays': 3},
        },
    }
    settings.update(overrides)
    return settings


async def seed(database, subscriptions=None, notifications=None, settings=None):
    """Write a tenant record straight into the store."""
    data = UserData.from_payload({
        'subscriptions': subscriptions or [],
        'notifications': notifications or [],
        'settings': settings if settings is not None else make_settings(),
    })
    await database.save_user_data(USERNAME, data)
    return data
