"""Best-effort spot prices for cost reporting.

Prices only feed the fiat estimates on execution records and batch previews,
so the feed never raises: it falls back to the last cached value and then to
the configured default.
"""

from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Callable

import requests
from requests import RequestException

from .config import PriceConfig

logger = logging.getLogger(__name__)

FIAT_CURRENCY = "usd"


class PriceFeed:
    """CoinGecko-compatible ``/simple/price`` client with a TTL cache."""

    def __init__(
        self,
        config: PriceConfig | None = None,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or PriceConfig()
        self._session = session or requests.Session()
        self._clock = clock
        self._cache: dict[str, tuple[Decimal, float]] = {}
        self._lock = threading.Lock()

    def spot_price(self, asset_id: str | None = None) -> Decimal:
        asset_id = (asset_id or self.config.native_asset_id).lower()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(asset_id)
        if cached is not None and now - cached[1] < self.config.cache_ttl:
            return cached[0]

        try:
            price = self._fetch(asset_id)
        except (RequestException, ValueError, KeyError, InvalidOperation) as exc:
            if cached is not None:
                logger.warning("Price lookup for %s failed, using cached %s: %s", asset_id, cached[0], exc)
                return cached[0]
            logger.warning(
                "Price lookup for %s failed, using fallback %s: %s",
                asset_id,
                self.config.fallback_price,
                exc,
            )
            return self.config.fallback_price

        with self._lock:
            self._cache[asset_id] = (price, now)
        return price

    def fiat_value(self, amount: Decimal, asset_id: str | None = None) -> Decimal:
        return amount * self.spot_price(asset_id)

    def _fetch(self, asset_id: str) -> Decimal:
        headers = {"accept": "application/json"}
        if self.config.api_key:
            headers["x-cg-demo-api-key"] = self.config.api_key
        response = self._session.get(
            f"{self.config.endpoint.rstrip('/')}/simple/price",
            params={"ids": asset_id, "vs_currencies": FIAT_CURRENCY},
            headers=headers,
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
        price = Decimal(str(payload[asset_id][FIAT_CURRENCY]))
        if not price.is_finite() or price <= 0:
            raise ValueError(f"Unusable price for {asset_id}: {price}")
        logger.debug("Spot price %s=%s %s", asset_id, price, FIAT_CURRENCY)
        return price


class FixedPriceFeed:
    """Price feed returning a constant; used offline and in previews without network."""

    def __init__(self, price: Decimal | str = "0") -> None:
        self.price = Decimal(str(price))

    def spot_price(self, asset_id: str | None = None) -> Decimal:
        return self.price

    def fiat_value(self, amount: Decimal, asset_id: str | None = None) -> Decimal:
        return amount * self.price
