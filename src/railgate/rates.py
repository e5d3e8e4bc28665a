"""BTC/USD exchange-rate source (CoinGecko simple-price API)."""

from __future__ import annotations

import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol, runtime_checkable

import httpx

from railgate.constants import SATS_PER_BTC
from railgate.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

_COINGECKO_URL = "https://api.coingecko.com/api/v3"
_CENT = Decimal("0.01")


class RateError(ExternalDependencyError):
    """Price could not be fetched or was nonsense. There is no fallback price."""


@runtime_checkable
class ExchangeRateSource(Protocol):
    async def btc_price_usd(self) -> Decimal: ...

    async def usd_to_sats(self, usd: Decimal) -> int: ...

    async def sats_to_usd(self, sats: int) -> Decimal: ...


def usd_to_sats_at(usd: Decimal, btc_price: Decimal) -> int:
    return int((usd / btc_price * SATS_PER_BTC).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sats_to_usd_at(sats: int, btc_price: Decimal) -> Decimal:
    return (Decimal(sats) / SATS_PER_BTC * btc_price).quantize(_CENT, rounding=ROUND_HALF_UP)


class CoinGeckoRates:
    """Cached BTC price with a short TTL. A failed fetch raises ``RateError``."""

    def __init__(
        self,
        cache_secs: float = 60.0,
        timeout_secs: float = 10.0,
        base_url: str = _COINGECKO_URL,
    ) -> None:
        self._cache_secs = cache_secs
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_secs)
        self._price: Decimal | None = None
        self._fetched_at: float = 0.0

    async def _fetch_price(self) -> Decimal:
        try:
            response = await self._client.get(
                "/simple/price", params={"ids": "bitcoin", "vs_currencies": "usd"}
            )
        except httpx.HTTPError as exc:
            raise RateError(f"Price fetch failed: {exc}") from exc
        if response.status_code != 200:
            raise RateError(
                f"Price API returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            price = Decimal(str(response.json()["bitcoin"]["usd"]))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise RateError(f"Invalid price data: {response.text[:200]}") from exc
        if price <= 0:
            raise RateError(f"Invalid BTC price {price}")
        return price

    async def btc_price_usd(self) -> Decimal:
        now = time.monotonic()
        if self._price is not None and now - self._fetched_at < self._cache_secs:
            return self._price
        self._price = await self._fetch_price()
        self._fetched_at = now
        logger.info("BTC price refreshed: $%s", self._price)
        return self._price

    async def usd_to_sats(self, usd: Decimal) -> int:
        return usd_to_sats_at(usd, await self.btc_price_usd())

    async def sats_to_usd(self, sats: int) -> Decimal:
        return sats_to_usd_at(sats, await self.btc_price_usd())

    async def close(self) -> None:
        await self._client.aclose()
