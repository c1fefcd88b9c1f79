"""Shared test fixtures for the recurring investment engine."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from dca.config import (
    APT_COIN,
    ChainSettings,
    MarketSettings,
    PriceFeedSettings,
    SchedulerSettings,
)
from dca.data.database import PlanDatabase
from dca.data.store import PlanStore
from dca.feeds.market_feed import MarketFeed
from dca.feeds.price_feed import PriceFeed
from dca.ledger import TransactionLedger
from dca.models import Market, PriceSample

DAY_MS = 24 * 60 * 60 * 1000
USER_ADDRESS = "0x" + "a" * 64


def daily_samples(prices: list[str | int], start_ms: int = 1_700_000_000_000) -> list[PriceSample]:
    """One sample per day, oldest first."""
    return [
        PriceSample(timestamp_ms=start_ms + i * DAY_MS, price=Decimal(str(p)))
        for i, p in enumerate(prices)
    ]


def make_market(
    asset_name: str = "APT",
    deposit_apy: str = "5",
    extra_apy: str = "0",
    token_address: str = APT_COIN,
    decimals: int = 8,
) -> Market:
    return Market(
        asset_name=asset_name,
        token_address=token_address,
        decimals=decimals,
        deposit_apy=Decimal(deposit_apy),
        extra_deposit_apy=Decimal(extra_apy),
    )


@pytest.fixture
def chain_settings() -> ChainSettings:
    """Mock-mode chain settings with a short call timeout."""
    return ChainSettings(
        mode="mock",
        call_timeout_seconds=1.0,
        mock_price=Decimal("5"),
        mock_initial_balance=Decimal("1000"),
    )


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(tick_interval_seconds=0.01, max_concurrent_plans=4)


@pytest.fixture
def price_settings() -> PriceFeedSettings:
    """No retry delay so feed failures resolve immediately."""
    return PriceFeedSettings(max_retries=1, retry_base_delay=0.0, timeout_seconds=1.0)


@pytest.fixture
def market_settings() -> MarketSettings:
    return MarketSettings(
        cache_ttl_seconds=900,
        cache_path=None,
        allow_fallback=False,
        max_retries=1,
        retry_base_delay=0.0,
        timeout_seconds=1.0,
    )


@pytest.fixture
def price_feed() -> AsyncMock:
    """PriceFeed returning ten flat daily samples (neutral momentum)."""
    feed = AsyncMock(spec=PriceFeed)
    feed.get_historical_prices.return_value = daily_samples(["5"] * 10)
    return feed


@pytest.fixture
def market_feed() -> AsyncMock:
    """MarketFeed listing a single APT market."""
    feed = AsyncMock(spec=MarketFeed)
    feed.get_all_markets.return_value = [make_market("APT", "4.5", "1.3")]
    return feed


@pytest_asyncio.fixture
async def database(tmp_path) -> PlanDatabase:  # type: ignore[no-untyped-def]
    db = PlanDatabase(str(tmp_path / "dca.db"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def store(database: PlanDatabase) -> PlanStore:
    return PlanStore(database)


@pytest.fixture
def ledger(store: PlanStore) -> TransactionLedger:
    return TransactionLedger(store)


@pytest.fixture
def samples_factory():  # type: ignore[no-untyped-def]
    """Build daily PriceSample lists from price strings."""
    return daily_samples


@pytest.fixture
def market_factory():  # type: ignore[no-untyped-def]
    """Build Market snapshots with the given APYs."""
    return make_market
