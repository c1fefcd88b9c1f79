"""Tests for the Joule lending market feed.

Verifies:
- Token address extraction from asset types
- Raw amounts normalized by 10**decimals, optional incentive APY
- Non-numeric values become 0
- Invalid entries are skipped, invalid payloads raise MarketFeedError
"""

from decimal import Decimal

import httpx
import pytest

from dca.config import MarketSettings
from dca.exceptions import MarketFeedError
from dca.feeds.market_feed import (
    JouleMarketFeed,
    extract_token_address,
    parse_joule_market,
    to_decimal,
)

USDC_TYPE = "0xf22bede237a07e121b56d91a491eb7bcdfd1f5907926a9e58338f964a01b17fa::asset::USDC"


def _entry(**overrides) -> dict:  # type: ignore[no-untyped-def]
    entry = {
        "asset": {"assetName": "USDC", "type": USDC_TYPE, "decimals": 6},
        "marketSize": "2500000000000",
        "totalBorrowed": "1000000000000",
        "depositApy": 4.5,
        "extraAPY": {"depositAPY": "1.3"},
        "borrowApy": 7.9,
        "priceInfo": {"price": 1.0},
        "ltv": 0.8,
    }
    entry.update(overrides)
    return entry


def test_extract_token_address_from_decorated_type() -> None:
    wrapped = f"fa:{USDC_TYPE}"
    assert extract_token_address(wrapped) == USDC_TYPE


def test_extract_token_address_passthrough() -> None:
    assert extract_token_address("native-apt") == "native-apt"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("4.2", Decimal("4.2")), (3, Decimal("3")), (None, Decimal("0")), ("n/a", Decimal("0")),
     (True, Decimal("0")), ("NaN", Decimal("0"))],
)
def test_to_decimal(raw: object, expected: Decimal) -> None:
    assert to_decimal(raw) == expected


def test_parse_joule_market_normalizes_amounts() -> None:
    market = parse_joule_market(_entry())

    assert market.asset_name == "USDC"
    assert market.token_address == USDC_TYPE
    assert market.market_size == Decimal("2500000")
    assert market.total_borrowed == Decimal("1000000")
    assert market.total_deposit_apy == Decimal("5.8")
    assert market.ltv == Decimal("0.8")


def test_parse_joule_market_without_extra_apy() -> None:
    market = parse_joule_market(_entry(extraAPY=None))
    assert market.extra_deposit_apy == Decimal("0")
    assert market.total_deposit_apy == Decimal("4.5")


def _feed(handler) -> JouleMarketFeed:  # type: ignore[no-untyped-def]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JouleMarketFeed(MarketSettings(), client=client)


@pytest.mark.asyncio
async def test_feed_skips_invalid_entries() -> None:
    payload = {"data": [_entry(), {"asset": {"assetName": "BROKEN"}}, "garbage"]}
    feed = _feed(lambda request: httpx.Response(200, json=payload))

    markets = await feed.get_all_markets()

    assert [m.asset_name for m in markets] == ["USDC"]


@pytest.mark.asyncio
async def test_feed_rejects_payload_without_data_list() -> None:
    feed = _feed(lambda request: httpx.Response(200, json={"markets": []}))
    with pytest.raises(MarketFeedError):
        await feed.get_all_markets()


@pytest.mark.asyncio
async def test_feed_wraps_http_errors() -> None:
    feed = _feed(lambda request: httpx.Response(503))
    with pytest.raises(MarketFeedError):
        await feed.get_all_markets()
