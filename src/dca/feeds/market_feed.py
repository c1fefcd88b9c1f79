"""Lending market feeds.

JouleMarketFeed reads the Joule Finance market endpoint and normalizes each
entry into a Market: raw amounts are divided by 10**decimals, the incentive
APY is optional, and any non-numeric value becomes 0.

FALLBACK_MARKETS is a static example snapshot. It is never returned by a
feed; MarketRanker only uses it when fallback is explicitly enabled, and
labels the resulting cache entry as fallback data.
"""

import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

import httpx

from dca.config import APT_COIN, USDC_COIN, MarketSettings
from dca.exceptions import MarketFeedError
from dca.logging import get_logger
from dca.models import Market

logger = get_logger(__name__)

_TOKEN_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]+::[a-zA-Z_]+::[a-zA-Z_]+")


FALLBACK_MARKETS: tuple[Market, ...] = (
    Market(
        asset_name="USDC",
        token_address=USDC_COIN,
        decimals=6,
        market_size=Decimal("1250000"),
        total_borrowed=Decimal("830000"),
        deposit_apy=Decimal("4.5"),
        extra_deposit_apy=Decimal("1.3"),
        borrow_apy=Decimal("7.9"),
        price=Decimal("1"),
        ltv=Decimal("0.8"),
    ),
    Market(
        asset_name="APT",
        token_address=APT_COIN,
        decimals=8,
        market_size=Decimal("310000"),
        total_borrowed=Decimal("95000"),
        deposit_apy=Decimal("2.1"),
        extra_deposit_apy=Decimal("1.4"),
        borrow_apy=Decimal("5.2"),
        price=Decimal("5"),
        ltv=Decimal("0.7"),
    ),
)


def extract_token_address(asset_type: str) -> str:
    """Return the ``0x..::module::Name`` part of an asset type, or the input."""
    match = _TOKEN_ADDRESS_RE.search(asset_type)
    if match:
        return match.group(0)
    return asset_type


def to_decimal(value: object) -> Decimal:
    """Parse a numeric field; absent, non-numeric or non-finite values become 0."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not parsed.is_finite():
        return Decimal("0")
    return parsed


def parse_joule_market(detail: dict) -> Market:
    """Convert one Joule market entry into a Market.

    Raises:
        KeyError, TypeError, ValueError: If the entry lacks asset metadata.
    """
    asset = detail["asset"]
    decimals = int(asset["decimals"])
    scale = Decimal(10) ** decimals
    extra = detail.get("extraAPY") or {}
    price_info = detail.get("priceInfo") or {}

    return Market(
        asset_name=str(asset["assetName"]),
        token_address=extract_token_address(str(asset.get("type", ""))),
        decimals=decimals,
        market_size=to_decimal(detail.get("marketSize")) / scale,
        total_borrowed=to_decimal(detail.get("totalBorrowed")) / scale,
        deposit_apy=to_decimal(detail.get("depositApy")),
        extra_deposit_apy=to_decimal(extra.get("depositAPY") if isinstance(extra, dict) else None),
        borrow_apy=to_decimal(detail.get("borrowApy")),
        price=to_decimal(price_info.get("price") if isinstance(price_info, dict) else None),
        ltv=to_decimal(detail.get("ltv")),
    )


class MarketFeed(ABC):
    """Source of lending market snapshots."""

    @abstractmethod
    async def get_all_markets(self) -> list[Market]:
        """Return every market currently listed by the protocol.

        Raises:
            MarketFeedError: On transport errors or malformed payloads.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""


class JouleMarketFeed(MarketFeed):
    """Joule Finance lending markets.

    Args:
        settings: Market settings (API URL, timeout).
        client: Optional pre-built httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: MarketSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._owns_client = client is None

    async def get_all_markets(self) -> list[Market]:
        try:
            resp = await self._client.get(self._settings.api_url)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise MarketFeedError(f"Joule market request failed: {e}") from e
        except ValueError as e:
            raise MarketFeedError("Joule market endpoint returned invalid JSON") from e

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise MarketFeedError("Invalid response format from Joule market endpoint")

        markets: list[Market] = []
        for detail in entries:
            try:
                markets.append(parse_joule_market(detail))
            except (KeyError, TypeError, ValueError):
                logger.warning("invalid_market_entry", raw=str(detail)[:200])
                continue

        logger.info("markets_fetched", count=len(markets), skipped=len(entries) - len(markets))
        return markets

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
