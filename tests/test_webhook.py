"""Tests for the HTTP routes."""
import pytest
from aiohttp import test_utils

from bot.webhook import SERVICES_KEY, EngineServices, create_app
from conftest import BOT_TOKEN, USERNAME, make_settings, make_subscription, seed
from services.callbacks import CallbackService
from services.dispatcher import ReminderDispatcher
from services.exchange_rate import ExchangeRateService
from services.keystore import KeyVault

API_TOKEN = "api-secret"
AUTH = {'Authorization': f'Bearer {API_TOKEN}'}


@pytest.fixture
def services(db, telegram, mailer, rate_client, notifications_config):
    vault = KeyVault(db)
    return EngineServices(
        username=USERNAME,
        callbacks=CallbackService(db, USERNAME, telegram),
        dispatcher=ReminderDispatcher(db, USERNAME, telegram, mailer, notifications_config),
        exchange_rates=ExchangeRateService(db, vault, rate_client),
        vault=vault,
    )


@pytest.fixture
async def http(services):
    client = test_utils.TestClient(test_utils.TestServer(create_app(services, api_token=API_TOKEN)))
    await client.start_server()
    yield client
    await client.close()


async def test_services_are_stored_under_typed_key(services):
    app = create_app(services, api_token=API_TOKEN)

    assert app[SERVICES_KEY] is services


async def test_webhook_invalid_token(db, http):
    await seed(db, subscriptions=[make_subscription()])

    resp = await http.post('/api/telegram/webhook/not-the-token', json={'update_id': 1})

    assert resp.status == 403
    assert await resp.json() == {'ok': False, 'message': 'invalid_token'}


async def test_webhook_does_not_need_api_token(db, http, telegram):
    await seed(db, subscriptions=[make_subscription()])

    resp = await http.post(f'/api/telegram/webhook/{BOT_TOKEN}', json={
        'update_id': 1,
        'callback_query': {
            'id': 'cq',
            'data': 'renewed|sub-1',
            'message': {'message_id': 3, 'text': '', 'chat': {'id': 1}},
        },
    })

    assert resp.status == 200
    assert await resp.json() == {'ok': True, 'message': 'ok'}
    assert telegram.answers == [('cq', '已标记为已续订')]


async def test_webhook_bad_body_is_ignored(db, http):
    await seed(db)

    resp = await http.post(f'/api/telegram/webhook/{BOT_TOKEN}', data=b'not json')

    assert resp.status == 200
    assert (await resp.json())['message'] == 'ignored'


async def test_webhook_unexpected_error(http, services, monkeypatch):
    async def broken(token, update):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.callbacks, 'handle_update', broken)

    resp = await http.post(f'/api/telegram/webhook/{BOT_TOKEN}', json={})

    assert resp.status == 500
    assert (await resp.json())['ok'] is False


async def test_api_routes_require_token(http):
    for method, path in (
        ('GET', '/api/exchange-rate/public-key'),
        ('POST', '/api/exchange-rate/update'),
        ('POST', '/api/notifications/test-telegram'),
    ):
        resp = await http.request(method, path)
        assert resp.status == 401

    resp = await http.get('/api/exchange-rate/public-key', headers={'Authorization': 'Bearer wrong'})
    assert resp.status == 401


async def test_public_key(http):
    resp = await http.get('/api/exchange-rate/public-key', headers=AUTH)

    assert resp.status == 200
    jwk = (await resp.json())['jwk']
    assert jwk['kty'] == 'RSA'
    assert jwk['e'] == 'AQAB'


async def test_exchange_rate_config_and_update(db, http, services, rate_client):
    await seed(db)
    ciphertext = await services.vault.encrypt('real-key')

    resp = await http.post(
        '/api/exchange-rate/config',
        json={'encryptedKey': ciphertext, 'test': True},
        headers=AUTH
    )

    assert resp.status == 200
    body = await resp.json()
    assert body['ok'] is True
    assert body['settings']['exchangeRateApi']['enabled'] is True
    assert body['settings']['exchangeRates']['CNY'] == 7.1

    resp = await http.post('/api/exchange-rate/update', headers=AUTH)

    assert resp.status == 200
    assert (await resp.json())['settings']['lastRatesUpdate'] > 0
    assert rate_client.keys == ['real-key', 'real-key', 'real-key']


async def test_exchange_rate_config_with_bad_key(db, http):
    await seed(db)

    resp = await http.post(
        '/api/exchange-rate/config',
        json={'encryptedKey': 'AAAA', 'test': True},
        headers=AUTH
    )

    assert resp.status == 400
    assert await resp.json() == {'ok': False, 'message': 'decryption_failed'}


async def test_exchange_rate_update_not_enabled(db, http):
    await seed(db)

    resp = await http.post('/api/exchange-rate/update', headers=AUTH)

    assert resp.status == 400
    assert await resp.json() == {'ok': False, 'message': 'exchange_rate_api_not_enabled'}


async def test_test_telegram(db, http, telegram):
    await seed(db)

    resp = await http.post('/api/notifications/test-telegram', headers=AUTH)

    assert resp.status == 200
    assert await resp.json() == {'ok': True}
    assert len(telegram.sent) == 1


async def test_test_telegram_not_configured(db, http):
    await seed(db, settings=make_settings(telegram=False))

    resp = await http.post('/api/notifications/test-telegram', headers=AUTH)

    assert resp.status == 400
    assert await resp.json() == {'ok': False, 'message': 'telegram_not_configured'}
