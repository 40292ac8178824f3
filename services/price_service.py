"""
TRX price oracle backed by CoinGecko.

GET https://api.coingecko.com/api/v3/simple/price?ids=tron&vs_currencies=usd

The cached rate is refreshed every PRICE_CACHE_SECONDS. On fetch errors the
last known price is served, and the configured fallback constant when nothing
has been fetched yet. Callers never see an exception.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

import aiohttp

from config import Config
from utils.clock import Clock
from utils.fee_calculator import round6, to_decimal

logger = logging.getLogger(__name__)


class PriceFetchError(Exception):
    """Rate provider returned an unusable response"""
    pass


class PriceService:
    """TRX -> USD price cache owned by the process (not a module singleton)"""

    def __init__(self, clock: Clock, api_url: Optional[str] = None, cache_seconds: Optional[int] = None):
        self.clock = clock
        self.api_url = api_url or Config.COINGECKO_API_URL
        self.cache_seconds = cache_seconds if cache_seconds is not None else Config.PRICE_CACHE_SECONDS
        self._price: Optional[Decimal] = None
        self._fetched_at: Optional[datetime] = None

    def get_cached_price(self) -> Optional[Decimal]:
        return self._price

    def _is_fresh(self) -> bool:
        if self._price is None or self._fetched_at is None:
            return False
        return self.clock.now() - self._fetched_at < timedelta(seconds=self.cache_seconds)

    async def get_trx_price(self) -> Decimal:
        if self._is_fresh():
            return self._price
        return await self.refresh_price()

    async def refresh_price(self) -> Decimal:
        try:
            price = await self._fetch_price()
        except (aiohttp.ClientError, asyncio.TimeoutError, PriceFetchError) as e:
            if self._price is not None:
                logger.warning(f"⚠️ TRX_PRICE: fetch failed ({e}), serving cached {self._price}")
                return self._price
            logger.warning(f"⚠️ TRX_PRICE: fetch failed ({e}), using fallback {Config.TRX_FALLBACK_PRICE}")
            return Config.TRX_FALLBACK_PRICE

        self._price = price
        self._fetched_at = self.clock.now()
        logger.info(f"💱 TRX_PRICE: {price} USD")
        return price

    async def trx_to_usdt(self, trx_amount: Decimal) -> Decimal:
        price = await self.get_trx_price()
        return round6(to_decimal(trx_amount) * price)

    async def _fetch_price(self) -> Decimal:
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.api_url) as response:
                if response.status == 429:
                    raise PriceFetchError("CoinGecko rate-limited")
                if response.status != 200:
                    raise PriceFetchError(f"CoinGecko HTTP {response.status}")
                data = await response.json()

        try:
            price = Decimal(str(data["tron"]["usd"]))
        except (KeyError, TypeError, InvalidOperation):
            raise PriceFetchError(f"Unexpected CoinGecko payload: {data}")
        if price <= 0:
            raise PriceFetchError(f"Non-positive TRX price: {price}")
        return price
