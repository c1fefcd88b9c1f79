"""Trade size resolution for one plan execution.

Sizing flow:
1. Fetch price history (read-only, bounded retry with backoff)
2. Analyze momentum; short history yields a neutral decision
3. Look up the plan's risk multiplier
4. trade_amount = plan.amount * momentum_factor * risk_multiplier,
   rounded down to the source asset precision

A failing price feed never blocks a plan: the decision degrades to neutral
(factor 1.0) and the fallback is logged.
"""

from decimal import ROUND_DOWN

from dca.analysis.price_analyzer import analyze
from dca.analysis.risk import risk_multiplier
from dca.config import PriceFeedSettings, SchedulerSettings
from dca.exceptions import PriceFeedError
from dca.feeds.price_feed import PriceFeed
from dca.feeds.retry import fetch_with_retry
from dca.logging import get_logger
from dca.models import Plan, SizingDecision, TradeSizing

logger = get_logger(__name__)


class SizingService:
    """Resolves the momentum- and risk-adjusted amount for a plan.

    Args:
        price_feed: Historical price source.
        price_settings: Asset id, history length and retry policy.
        scheduler_settings: Amount precision for rounding.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        price_settings: PriceFeedSettings,
        scheduler_settings: SchedulerSettings,
    ) -> None:
        self._feed = price_feed
        self._price_settings = price_settings
        self._scheduler_settings = scheduler_settings

    async def decide(self) -> SizingDecision:
        """Analyze current price momentum, degrading to neutral on feed failure."""
        try:
            samples = await fetch_with_retry(
                self._feed.get_historical_prices,
                self._price_settings.asset_id,
                self._price_settings.history_days,
                max_retries=self._price_settings.max_retries,
                base_delay=self._price_settings.retry_base_delay,
                timeout=self._price_settings.timeout_seconds,
            )
        except (PriceFeedError, TimeoutError) as e:
            logger.warning(
                "sizing_fallback_neutral",
                reason="price_feed_error",
                error=str(e) or type(e).__name__,
            )
            return SizingDecision.neutral("price_feed_error")

        decision = analyze(samples)
        if decision.is_fallback:
            logger.warning(
                "sizing_fallback_neutral",
                reason=decision.fallback_reason,
                samples=len(samples),
            )
        else:
            logger.debug(
                "sizing_decision",
                ma_7d=str(decision.moving_average_7d),
                ma_30d=str(decision.moving_average_30d),
                change_24h=str(decision.price_change_24h),
                momentum_factor=str(decision.momentum_factor),
            )
        return decision

    async def resolve(self, plan: Plan) -> TradeSizing:
        decision = await self.decide()
        multiplier = risk_multiplier(plan.risk_tier)
        raw = plan.amount * decision.momentum_factor * multiplier
        trade_amount = raw.quantize(self._scheduler_settings.amount_precision, rounding=ROUND_DOWN)

        logger.info(
            "trade_sized",
            plan_id=plan.id,
            base_amount=str(plan.amount),
            momentum_factor=str(decision.momentum_factor),
            risk_multiplier=str(multiplier),
            trade_amount=str(trade_amount),
            neutral=decision.is_fallback,
        )

        return TradeSizing(
            decision=decision,
            risk_multiplier=multiplier,
            base_amount=plan.amount,
            trade_amount=trade_amount,
        )
