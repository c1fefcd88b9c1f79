"""Historical price feeds for momentum sizing.

CoinGeckoPriceFeed reads the public market_chart endpoint over httpx.
ExchangePriceFeed reads daily OHLCV candles through ccxt and uses the close.
Both return PriceSample lists ordered oldest-first with positive prices only.
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async
import httpx

from dca.config import PriceFeedSettings
from dca.exceptions import PriceFeedError
from dca.logging import get_logger
from dca.models import PriceSample

logger = get_logger(__name__)

_ONE_DAY_MS = 24 * 60 * 60 * 1000


def _to_sample(timestamp: object, price: object) -> PriceSample | None:
    try:
        value = Decimal(str(price))
        ts = int(timestamp)  # type: ignore[call-overload]
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return PriceSample(timestamp_ms=ts, price=value)


class PriceFeed(ABC):
    """Source of historical prices for an asset."""

    @abstractmethod
    async def get_historical_prices(self, asset_id: str, days: int) -> list[PriceSample]:
        """Return samples covering the last ``days`` days, oldest first.

        Raises:
            PriceFeedError: On transport errors or malformed payloads.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class CoinGeckoPriceFeed(PriceFeed):
    """CoinGecko ``/coins/{id}/market_chart`` price history.

    Args:
        settings: Price feed settings (base URL, API key, interval, timeout).
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: PriceFeedSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            headers={"Accept": "application/json", "User-Agent": "dca-engine/1.0"},
        )
        self._owns_client = client is None

    async def get_historical_prices(self, asset_id: str, days: int) -> list[PriceSample]:
        params: dict[str, str | int] = {"vs_currency": "usd", "days": days}
        if self._settings.interval:
            params["interval"] = self._settings.interval

        headers = {}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            headers["x-cg-demo-api-key"] = api_key

        try:
            resp = await self._client.get(
                f"/coins/{asset_id}/market_chart", params=params, headers=headers
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise PriceFeedError(f"CoinGecko request failed for {asset_id}: {e}") from e
        except ValueError as e:
            raise PriceFeedError(f"CoinGecko returned invalid JSON for {asset_id}") from e

        raw_prices = payload.get("prices") if isinstance(payload, dict) else None
        if not isinstance(raw_prices, list):
            raise PriceFeedError(f"CoinGecko response for {asset_id} has no price list")

        samples = []
        for row in raw_prices:
            if not isinstance(row, (list, tuple)) or len(row) < 2:
                continue
            sample = _to_sample(row[0], row[1])
            if sample is not None:
                samples.append(sample)

        samples.sort(key=lambda s: s.timestamp_ms)
        logger.debug("price_history_fetched", asset_id=asset_id, samples=len(samples))
        return samples

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ExchangePriceFeed(PriceFeed):
    """Daily close prices from an exchange via ccxt.

    Asset ids are mapped to exchange symbols through ``settings.symbol_map``;
    an id that already looks like a symbol ("APT/USDT") is used as-is.
    """

    def __init__(
        self,
        settings: PriceFeedSettings,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._settings = settings
        if exchange is None:
            exchange_cls = getattr(ccxt_async, settings.exchange_id)
            exchange = exchange_cls({"enableRateLimit": True})
        self._exchange = exchange

    def _symbol_for(self, asset_id: str) -> str:
        if "/" in asset_id:
            return asset_id
        symbol = self._settings.symbol_map.get(asset_id)
        if symbol is None:
            raise PriceFeedError(f"No exchange symbol mapped for asset {asset_id}")
        return symbol

    async def get_historical_prices(self, asset_id: str, days: int) -> list[PriceSample]:
        symbol = self._symbol_for(asset_id)
        since = int(time.time() * 1000) - days * _ONE_DAY_MS

        try:
            candles = await self._exchange.fetch_ohlcv(
                symbol, timeframe="1d", since=since, limit=days + 1
            )
        except ccxt_async.BaseError as e:
            raise PriceFeedError(f"OHLCV fetch failed for {symbol}: {e}") from e

        # [timestamp_ms, open, high, low, close, volume]
        samples = []
        for candle in candles or []:
            if len(candle) < 5:
                continue
            sample = _to_sample(candle[0], candle[4])
            if sample is not None:
                samples.append(sample)

        samples.sort(key=lambda s: s.timestamp_ms)
        logger.debug("price_history_fetched", symbol=symbol, samples=len(samples))
        return samples

    async def close(self) -> None:
        """Clean up ccxt async resources."""
        await self._exchange.close()
