"""Theoretical interest on deposited principal.

accrued = principal * (total_deposit_apy / 100) * (elapsed_ms / ms_per_year)

Simple (non-compounding) interest at the currently selected best market's
rate, not the rate in force at deposit time. This is an estimate for display,
not an accrual ledger.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from dca.logging import get_logger
from dca.markets.ranker import MarketRanker

logger = get_logger(__name__)

MS_PER_YEAR = 365 * 24 * 60 * 60 * 1000


def accrued_interest(principal: Decimal, apy_pct: Decimal, elapsed_ms: int) -> Decimal:
    """Simple interest; negative elapsed time accrues nothing."""
    elapsed = max(elapsed_ms, 0)
    return principal * (apy_pct / Decimal("100")) * (Decimal(elapsed) / Decimal(MS_PER_YEAR))


@dataclass
class InterestQuote:
    principal: Decimal
    deposited_at_ms: int
    elapsed_ms: int
    apy: Decimal
    asset: str
    interest: Decimal
    is_live: bool


class InterestAccrual:
    """Quotes accrued interest using the ranker's current best market.

    Args:
        ranker: Source of the best market rate.
        clock: Time source returning Unix seconds.
    """

    def __init__(self, ranker: MarketRanker, clock: Callable[[], float] = time.time) -> None:
        self._ranker = ranker
        self._clock = clock

    async def quote(self, principal: Decimal, deposited_at_ms: int) -> InterestQuote:
        """Raises NoMarketsAvailable or MarketFeedError if no rate is available."""
        entry = await self._ranker.get_best()
        now_ms = int(self._clock() * 1000)
        elapsed_ms = max(now_ms - deposited_at_ms, 0)
        apy = entry.market.total_deposit_apy
        interest = accrued_interest(principal, apy, elapsed_ms)

        logger.debug(
            "interest_quoted",
            principal=str(principal),
            apy=str(apy),
            elapsed_ms=elapsed_ms,
            interest=str(interest),
            source=entry.source.value,
        )

        return InterestQuote(
            principal=principal,
            deposited_at_ms=deposited_at_ms,
            elapsed_ms=elapsed_ms,
            apy=apy,
            asset=entry.market.asset_name,
            interest=interest,
            is_live=entry.is_live,
        )
