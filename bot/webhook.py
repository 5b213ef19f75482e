"""HTTP server: Telegram webhook and engine API routes."""
import logging
from dataclasses import dataclass

from aiohttp import web

from bot.middleware import bearer_auth_middleware, logging_middleware
from core.errors import ChannelNotConfiguredError
from services.callbacks import CallbackService
from services.dispatcher import ReminderDispatcher
from services.exchange_rate import ExchangeRateService, settings_slice
from services.keystore import KeyVault

logger = logging.getLogger(__name__)

PROTECTED_PREFIXES = ("/api/exchange-rate/", "/api/notifications/")


@dataclass
class EngineServices:
    """Services the HTTP handlers call into."""

    username: str
    callbacks: CallbackService
    dispatcher: ReminderDispatcher
    exchange_rates: ExchangeRateService
    vault: KeyVault


SERVICES_KEY = web.AppKey('services', EngineServices)


def _services(request: web.Request) -> EngineServices:
    return request.app[SERVICES_KEY]


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def handle_telegram_webhook(request: web.Request) -> web.Response:
    """Inline keyboard presses from the tenant's bot."""
    services = _services(request)
    token = request.match_info['token']
    update = await _json_body(request)

    try:
        outcome = await services.callbacks.handle_update(token, update)
    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return web.json_response({'ok': False, 'message': 'internal_error'}, status=500)

    return web.json_response(
        {'ok': outcome.ok, 'message': outcome.message},
        status=outcome.http_status
    )


async def handle_public_key(request: web.Request) -> web.Response:
    """Public key the browser encrypts the provider key with."""
    try:
        jwk = await _services(request).vault.public_jwk()
    except Exception as e:
        logger.error(f"Failed to provide exchange rate public key: {e}", exc_info=True)
        return web.json_response({'message': 'failed_to_get_public_key'}, status=500)
    return web.json_response({'jwk': jwk})


async def handle_exchange_rate_config(request: web.Request) -> web.Response:
    """Store an encrypted provider key and optionally test it."""
    services = _services(request)
    body = await _json_body(request)

    try:
        settings = await services.exchange_rates.configure(
            services.username,
            body.get('encryptedKey'),
            test=bool(body.get('test'))
        )
    except Exception as e:
        logger.error(f"Exchange rate config error: {e}")
        return web.json_response(
            {'ok': False, 'message': str(e) or 'exchange_rate_config_failed'},
            status=400
        )

    return web.json_response({'ok': True, 'settings': settings_slice(settings)})


async def handle_exchange_rate_update(request: web.Request) -> web.Response:
    """Refresh rates now."""
    services = _services(request)

    try:
        result = await services.exchange_rates.update_rates(services.username)
    except Exception as e:
        logger.error(f"Manual exchange rate update failed: {e}")
        return web.json_response(
            {'ok': False, 'message': str(e) or 'exchange_rate_update_failed'},
            status=500
        )

    if not result.updated:
        return web.json_response({'ok': False, 'message': result.reason or 'not_updated'}, status=400)

    return web.json_response({
        'ok': True,
        'settings': {
            'exchangeRateApi': result.exchange_rate_api.to_record(),
            'exchangeRates': result.exchange_rates,
            'lastRatesUpdate': result.last_rates_update,
        },
    })


async def handle_test_telegram(request: web.Request) -> web.Response:
    """Send a sample reminder to the configured chat."""
    try:
        await _services(request).dispatcher.send_test_message()
    except ChannelNotConfiguredError as e:
        return web.json_response({'ok': False, 'message': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Telegram test failed: {e}")
        return web.json_response({'ok': False, 'message': str(e) or 'telegram_test_failed'}, status=400)

    return web.json_response({'ok': True})


def create_app(services: EngineServices, api_token: str = '') -> web.Application:
    """
    Build the aiohttp application.

    Args:
        services: Engine services
        api_token: Bearer token for the API routes; empty disables auth

    Returns:
        web.Application
    """
    app = web.Application(middlewares=[
        logging_middleware,
        bearer_auth_middleware(api_token, PROTECTED_PREFIXES),
    ])
    app[SERVICES_KEY] = services

    app.router.add_post('/api/telegram/webhook/{token}', handle_telegram_webhook)
    app.router.add_get('/api/exchange-rate/public-key', handle_public_key)
    app.router.add_post('/api/exchange-rate/config', handle_exchange_rate_config)
    app.router.add_post('/api/exchange-rate/update', handle_exchange_rate_update)
    app.router.add_post('/api/notifications/test-telegram', handle_test_telegram)

    return app
