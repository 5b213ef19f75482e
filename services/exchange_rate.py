"""ExchangeRate-API client and scheduled rate refresh."""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from core.config import ExchangeRateConfig
from core.database import Database
from core.errors import ExchangeRateError
from models.settings import ExchangeRateApiSettings, Settings
from services.keystore import KeyVault
from utils.dates import (
    DEFAULT_TIMEZONE,
    epoch_ms,
    from_epoch_ms,
    get_zone,
    local_date_label,
    local_time_parts,
)

logger = logging.getLogger(__name__)

BASE_CURRENCY = 'USD'
SLOTS = (0, 12)
NOT_ENABLED = 'exchange_rate_api_not_enabled'


class ExchangeRateClient:
    """Client for ExchangeRate-API v6."""

    def __init__(self, config: ExchangeRateConfig):
        """
        Initialize client.

        Args:
            config: Exchange rate configuration
        """
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
                headers={'User-Agent': 'subm-engine/0.1.0'}
            )
            logger.info("Exchange rate client session started")

    async def close(self):
        """Close HTTP session."""
        if self.session:
            await asyncio.wait_for(self.session.close(), timeout=2.0)
            self.session = None
            logger.info("Exchange rate client session closed")

    async def fetch_usd_rates(self, api_key: str) -> Dict[str, Any]:
        """
        Fetch conversion rates with USD as base.

        Args:
            api_key: Plaintext provider key

        Returns:
            Mapping of currency code to rate

        Raises:
            ExchangeRateError: On HTTP errors or an unexpected body
        """
        if self.session is None:
            await self.start()

        url = f"{self.config.api_base_url.rstrip('/')}/{quote(api_key, safe='')}/latest/{BASE_CURRENCY}"

        async with self.session.get(url) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}

            if response.status >= 400:
                raise ExchangeRateError(
                    body.get('error-type')
                    or body.get('message')
                    or f"exchange_rate_api_http_{response.status}"
                )

        rates = body.get('conversion_rates')
        if body.get('result') != 'success' or not rates or not isinstance(rates, dict):
            raise ExchangeRateError(body.get('error-type') or 'exchange_rate_api_invalid_response')

        logger.debug(f"Fetched {len(rates)} exchange rates")
        return rates


@dataclass
class RateUpdate:
    """Result of one rate refresh."""

    updated: bool
    reason: str = ''
    last_rates_update: int = 0
    exchange_rates: Dict[str, float] = field(default_factory=dict)
    exchange_rate_api: Optional[ExchangeRateApiSettings] = None


def settings_slice(settings: Settings) -> Dict[str, Any]:
    """The part of settings the exchange rate endpoints return."""
    return {
        'exchangeRateApi': settings.exchange_rate_api.to_record(),
        'exchangeRates': dict(settings.exchange_rates),
        'lastRatesUpdate': settings.last_rates_update,
    }


def merge_rates(
    current: Dict[str, float],
    fetched: Dict[str, Any],
    codes
) -> Dict[str, float]:
    """
    Merge fetched rates for the tracked codes into the current table.

    Only finite positive numbers are taken. USD is always 1.
    """
    merged = dict(current)
    merged[BASE_CURRENCY] = 1.0
    for code in codes:
        if code == BASE_CURRENCY:
            continue
        rate = fetched.get(code)
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            continue
        if math.isfinite(rate) and rate > 0:
            merged[code] = float(rate)
    return merged


class ExchangeRateService:
    """Rate refresh and credential configuration for a tenant."""

    def __init__(self, db: Database, vault: KeyVault, client: ExchangeRateClient):
        self.db = db
        self.vault = vault
        self.client = client

    async def update_rates(
        self,
        username: str,
        slot: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> RateUpdate:
        """
        Refresh tracked exchange rates.

        Args:
            username: Tenant key
            slot: Daily slot (0 or 12) to stamp, or None for a manual run
            now: Instant to stamp (defaults to now)

        Returns:
            RateUpdate

        Raises:
            DecryptionError: If the stored key cannot be decrypted
            ExchangeRateError: If the provider call fails
        """
        data = await self.db.load_user_data(username)
        settings = data.settings
        api = settings.exchange_rate_api

        if not api.enabled or not api.encrypted_key:
            return RateUpdate(updated=False, reason=NOT_ENABLED)

        api_key = await self.vault.decrypt(api.encrypted_key)
        fetched = await self.client.fetch_usd_rates(api_key)

        stamp = epoch_ms(now)
        settings.exchange_rates = merge_rates(
            settings.exchange_rates,
            fetched,
            settings.tracked_currency_codes
        )
        settings.last_rates_update = stamp
        if slot is not None:
            api.mark_run(slot, stamp)

        await self.db.save_user_data(username, data)
        logger.info(f"Exchange rates updated for {username} (slot={slot})")

        return RateUpdate(
            updated=True,
            last_rates_update=stamp,
            exchange_rates=dict(settings.exchange_rates),
            exchange_rate_api=api,
        )

    async def configure(self, username: str, encrypted_key: Optional[str], test: bool = False) -> Settings:
        """
        Store a new encrypted key; optionally test it and refresh at once.

        The feature is disabled until a test succeeds.

        Returns:
            Tenant settings after the change

        Raises:
            DecryptionError: If the test cannot decrypt the key
            ExchangeRateError: If the test call fails
        """
        data = await self.db.load_user_data(username)
        api = data.settings.exchange_rate_api
        if isinstance(encrypted_key, str):
            api.encrypted_key = encrypted_key
        api.enabled = False
        await self.db.save_user_data(username, data)

        if not test:
            return data.settings

        api_key = await self.vault.decrypt(api.encrypted_key)
        await self.client.fetch_usd_rates(api_key)

        api.enabled = True
        api.last_tested_at = epoch_ms()
        await self.db.save_user_data(username, data)
        logger.info(f"Exchange rate API key for {username} tested")

        await self.update_rates(username)
        return (await self.db.load_user_data(username)).settings


def slot_due(api: ExchangeRateApiSettings, slot: int, tz_name: str, now: Optional[datetime] = None) -> bool:
    """
    Check if a daily slot still has to run.

    A slot is due once its local hour has been reached and it has not
    run yet on the current local date.
    """
    hour, _ = local_time_parts(tz_name, now)
    if hour < slot:
        return False
    last = api.last_run(slot)
    if not last:
        return True
    return local_date_label(tz_name, from_epoch_ms(last)) != local_date_label(tz_name, now)


class ExchangeRateRefresher:
    """Runs the 00:00 and 12:00 local refresh slots of one tenant."""

    def __init__(
        self,
        service: ExchangeRateService,
        db: Database,
        username: str,
        default_timezone: str = DEFAULT_TIMEZONE
    ):
        self.service = service
        self.db = db
        self.username = username
        self.default_timezone = default_timezone
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Run due slots.

        Args:
            now: Current instant (defaults to now)

        Returns:
            Number of slots that ran successfully
        """
        if self._running:
            logger.debug("Previous exchange rate tick still running, skipping")
            return 0

        self._running = True
        try:
            return await self._run_due_slots(now)
        except Exception as e:
            logger.error(f"Exchange rate tick failed: {e}", exc_info=True)
            return 0
        finally:
            self._running = False

    async def _run_due_slots(self, now: Optional[datetime]) -> int:
        data = await self.db.load_user_data(self.username)
        settings = data.settings
        if not settings.exchange_rate_api.ready:
            return 0

        if now is None:
            now = datetime.now(timezone.utc)
        api = settings.exchange_rate_api
        tz_name = get_zone(settings.timezone, self.default_timezone).key

        ran = 0
        for slot in SLOTS:
            if not slot_due(api, slot, tz_name, now):
                continue
            try:
                result = await self.service.update_rates(self.username, slot, now)
            except Exception as e:
                logger.error(f"Exchange rate slot {slot:02d}:00 failed: {e}")
                continue
            if result.updated:
                ran += 1
        return ran
