"""Tests for inline keyboard feedback handling."""
from datetime import date

import pytest

from conftest import BOT_TOKEN, CHAT_ID, USERNAME, make_settings, make_subscription, seed
from core.errors import UnsupportedActionError
from models.notification import RenewalFeedback
from models.subscription import Subscription
from services.callbacks import (
    CallbackService,
    apply_action,
    parse_callback_data,
    resolve_subscription,
)
from services.template import DEFAULT_TEMPLATE, render_template


def _update(data, text='', query_id='cq-1', message_id=77):
    return {
        'update_id': 1,
        'callback_query': {
            'id': query_id,
            'from': {'id': 1, 'is_bot': False, 'first_name': 'Me'},
            'data': data,
            'message': {
                'message_id': message_id,
                'text': text,
                'chat': {'id': int(CHAT_ID), 'type': 'private'},
            },
        },
    }


def test_parse_callback_data():
    assert parse_callback_data('renewed|sub-1') == ('renewed', 'sub-1')
    assert parse_callback_data('deprecated|a|b') == ('deprecated', 'a|b')
    assert parse_callback_data('renewed') == ('renewed', '')
    assert parse_callback_data(None) == ('', '')


def test_resolve_subscription_order():
    subs = [
        Subscription(id='1', name='Netflix'),
        Subscription(id='2', name='1'),
        Subscription(id='3', name='Spotify'),
    ]
    text = render_template(DEFAULT_TEMPLATE, subs[2])

    assert resolve_subscription(subs, '1', text, DEFAULT_TEMPLATE).id == '1'
    assert resolve_subscription(subs, 'Netflix', '', DEFAULT_TEMPLATE).id == '1'
    assert resolve_subscription(subs, 'gone', text, DEFAULT_TEMPLATE).id == '3'
    assert resolve_subscription(subs, '', text, DEFAULT_TEMPLATE).id == '3'
    assert resolve_subscription(subs, 'gone', 'hello', DEFAULT_TEMPLATE) is None


def test_apply_renewed_reactivates_and_advances():
    sub = Subscription(
        name='Netflix',
        frequency='Monthly',
        next_billing_date='2025-01-31',
        status='cancelled',
        cancelled_at='2025-01-20',
    )

    result = apply_action(sub, 'renewed', date(2025, 2, 1))

    assert result.action == RenewalFeedback.RENEWED
    assert result.previous_next_billing_date == '2025-01-31'
    assert result.status_changed
    assert sub.status == 'active'
    assert sub.next_billing_date == '2025-02-28'
    assert sub.cancelled_at is None


def test_apply_renewed_keeps_unadvanceable_date():
    sub = Subscription(name='X', frequency='Weekly', next_billing_date='2025-01-31')

    result = apply_action(sub, RenewalFeedback.RENEWED)

    assert not result.status_changed
    assert sub.next_billing_date == '2025-01-31'


def test_apply_deprecated_cancels():
    sub = Subscription(name='Netflix', frequency='Yearly', next_billing_date='2025-03-01')

    result = apply_action(sub, 'deprecated', date(2025, 2, 27))

    assert result.previous_next_billing_date == '2025-03-01'
    assert sub.status == 'cancelled'
    assert sub.cancelled_at == '2025-02-27'
    assert sub.next_billing_date == ''


def test_apply_deprecated_twice_keeps_first_stamp():
    sub = Subscription(name='Netflix', status='cancelled', cancelled_at='2025-01-01', next_billing_date='')

    result = apply_action(sub, 'deprecated', date(2025, 2, 27))

    assert not result.status_changed
    assert sub.cancelled_at == '2025-01-01'


@pytest.mark.parametrize("action", ['pending', 'delete', ''])
def test_apply_unknown_action(action):
    sub = Subscription(name='Netflix', next_billing_date='2025-03-01')

    with pytest.raises(UnsupportedActionError):
        apply_action(sub, action)

    assert sub.status == 'active'
    assert sub.next_billing_date == '2025-03-01'


@pytest.fixture
def service(db, telegram):
    return CallbackService(db, USERNAME, telegram)


async def test_invalid_token(db, service, telegram):
    await seed(db, subscriptions=[make_subscription()])

    outcome = await service.handle_update('wrong-token', _update('renewed|sub-1'))

    assert outcome.message == 'invalid_token'
    assert outcome.http_status == 403
    assert telegram.answers == []


async def test_update_without_callback_is_ignored(db, service):
    await seed(db)

    outcome = await service.handle_update(BOT_TOKEN, {'update_id': 5, 'message': {'text': 'hi'}})

    assert outcome.ok
    assert outcome.message == 'ignored'


async def test_malformed_update_is_ignored(db, service, telegram):
    await seed(db, subscriptions=[make_subscription()])
    update = _update('renewed|sub-1', message_id='not-a-number')

    outcome = await service.handle_update(BOT_TOKEN, update)

    assert outcome.ok
    assert outcome.message == 'ignored'
    assert telegram.answers == []
    data = await db.load_user_data(USERNAME)
    assert data.subscriptions[0].next_billing_date == make_subscription()['nextBillingDate']


async def test_invalid_action(db, service, telegram):
    await seed(db, subscriptions=[make_subscription()])

    outcome = await service.handle_update(BOT_TOKEN, _update('snooze|sub-1'))

    assert outcome.message == 'invalid_action'
    assert telegram.answers == [('cq-1', '无效操作')]


async def test_subscription_not_found(db, service, telegram):
    await seed(db, subscriptions=[make_subscription()])

    outcome = await service.handle_update(BOT_TOKEN, _update('renewed|nope', text='nothing useful'))

    assert outcome.message == 'subscription_not_found'
    assert telegram.answers == [('cq-1', '找不到对应的订阅记录')]
    assert telegram.cleared == []


async def test_renewed_feedback(db, service, telegram, today):
    sub = make_subscription()
    previous = sub['nextBillingDate']
    await seed(db, subscriptions=[sub], notifications=[{
        'id': 'n1',
        'subscriptionName': 'Netflix',
        'type': 'renewal_reminder',
        'channel': 'telegram',
        'status': 'success',
        'timestamp': 1,
        'details': {'date': previous, 'subscriptionId': 'sub-1', 'renewalFeedback': 'pending'},
    }])

    outcome = await service.handle_update(BOT_TOKEN, _update('renewed|sub-1'))

    assert outcome.ok
    assert outcome.message == 'ok'
    assert telegram.answers == [('cq-1', '已标记为已续订')]
    assert telegram.cleared == [(CHAT_ID, 77)]

    data = await db.load_user_data(USERNAME)
    stored = data.subscriptions[0]
    assert stored.status == 'active'
    assert stored.next_billing_date > previous
    assert data.notifications[0].details.renewal_feedback == 'renewed'


async def test_deprecated_resolved_from_message_text(db, service, telegram):
    sub = make_subscription(id='')
    await seed(db, subscriptions=[sub], settings=make_settings())
    text = render_template(DEFAULT_TEMPLATE, Subscription.model_validate(sub))

    outcome = await service.handle_update(BOT_TOKEN, _update('deprecated|unknown', text=text))

    assert outcome.ok
    assert telegram.answers == [('cq-1', '已标记为已弃用')]

    stored = (await db.load_user_data(USERNAME)).subscriptions[0]
    assert stored.status == 'cancelled'
    assert stored.next_billing_date == ''
    assert stored.cancelled_at


async def test_acknowledgement_failure_keeps_save(db, service, telegram):
    await seed(db, subscriptions=[make_subscription()])
    telegram.answer_error = RuntimeError("query is too old")

    outcome = await service.handle_update(BOT_TOKEN, _update('deprecated|sub-1'))

    assert outcome.ok
    stored = (await db.load_user_data(USERNAME)).subscriptions[0]
    assert stored.status == 'cancelled'
