"""Tests for SizingService trade amount resolution.

Verifies:
- trade_amount = amount * momentum_factor * risk_multiplier
- Result is rounded down to the configured precision
- Price feed failure degrades to neutral sizing instead of raising
- Short history degrades to neutral sizing
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dca.analysis.sizing import SizingService
from dca.config import PriceFeedSettings, SchedulerSettings
from dca.exceptions import PriceFeedError
from dca.models import FrequencyUnit, Plan, RiskTier


def _plan(amount: str = "100", tier: RiskTier = RiskTier.NO_RISK) -> Plan:
    return Plan(
        id="plan-1",
        user_id="user-1",
        amount=Decimal(amount),
        frequency=FrequencyUnit.DAY,
        interval=1,
        destination="0x" + "a" * 64,
        risk_tier=tier,
    )


@pytest.fixture
def service(
    price_feed: AsyncMock,
    price_settings: PriceFeedSettings,
    scheduler_settings: SchedulerSettings,
) -> SizingService:
    return SizingService(price_feed, price_settings, scheduler_settings)


@pytest.mark.asyncio
async def test_flat_prices_no_risk_keeps_base_amount(service: SizingService) -> None:
    sizing = await service.resolve(_plan("100"))
    assert sizing.decision.momentum_factor == Decimal("1.0")
    assert sizing.risk_multiplier == Decimal("1.0")
    assert sizing.trade_amount == Decimal("100")


@pytest.mark.asyncio
async def test_momentum_and_risk_multiply(
    service: SizingService, price_feed: AsyncMock, samples_factory
) -> None:
    """+2% day (factor 1.2) on a medium risk plan (1.5): 100 * 1.2 * 1.5 = 180."""
    price_feed.get_historical_prices.return_value = samples_factory(["10"] * 9 + ["10.2"])

    sizing = await service.resolve(_plan("100", RiskTier.MEDIUM_RISK))

    assert sizing.decision.momentum_factor == Decimal("1.2")
    assert sizing.trade_amount == Decimal("180")
    price_feed.get_historical_prices.assert_awaited_once_with("aptos", 31)


@pytest.mark.asyncio
async def test_trade_amount_rounds_down(
    service: SizingService, price_feed: AsyncMock, samples_factory
) -> None:
    """+5% gives a factor with a long expansion; the result is truncated to 6 dp."""
    price_feed.get_historical_prices.return_value = samples_factory(["100"] * 9 + ["105"])

    sizing = await service.resolve(_plan("1"))

    exact = Decimal("1.4") + Decimal("2") / Decimal("23.33")
    assert sizing.trade_amount <= exact
    assert exact - sizing.trade_amount < Decimal("0.000001")
    assert sizing.trade_amount.as_tuple().exponent == -6


@pytest.mark.asyncio
async def test_feed_error_falls_back_to_neutral(
    service: SizingService, price_feed: AsyncMock
) -> None:
    price_feed.get_historical_prices.side_effect = PriceFeedError("rate limited")

    sizing = await service.resolve(_plan("50", RiskTier.HIGH_RISK))

    assert sizing.decision.is_fallback is True
    assert sizing.decision.fallback_reason == "price_feed_error"
    assert sizing.trade_amount == Decimal("100")


@pytest.mark.asyncio
async def test_short_history_falls_back_to_neutral(
    service: SizingService, price_feed: AsyncMock, samples_factory
) -> None:
    price_feed.get_historical_prices.return_value = samples_factory(["1", "2", "3"])

    sizing = await service.resolve(_plan("10", RiskTier.LOW_RISK))

    assert sizing.decision.is_fallback is True
    assert sizing.trade_amount == Decimal("12")
