"""Price momentum analysis for trade sizing.

Computes moving averages, the 24h rolling price change and a piecewise
momentum factor from a sequence of price samples.

Momentum factor (percent change p, a = |p|):
  p > 0:  p < 3       -> 1.0 + p / 10
          3 <= p < 10 -> 1.4 + (p - 3) / 23.33
          p >= 10     -> 1.7 + min((p - 10) / 50, 0.2)
  p <= 0: a < 3       -> 1.0 - a / 10
          3 <= a < 10 -> 0.7 - (a - 3) / 23.33
          a >= 10     -> 0.3 - min((a - 10) / 50, 0.2)

CRITICAL: The breakpoints and constants define the product's risk/reward
behaviour. Do not tune them.
"""

from decimal import Decimal

from dca.exceptions import InsufficientHistory
from dca.models import PriceSample, SizingDecision

SHORT_WINDOW = 7
LONG_WINDOW = 30

_ONE_DAY_MS = 24 * 60 * 60 * 1000
_HUNDRED = Decimal("100")

_LOW_BREAK = Decimal("3")
_HIGH_BREAK = Decimal("10")
_LOW_SLOPE = Decimal("10")
_MID_SLOPE = Decimal("23.33")
_HIGH_SLOPE = Decimal("50")
_HIGH_CAP = Decimal("0.2")


def _ordered(samples: list[PriceSample]) -> list[PriceSample]:
    return sorted(samples, key=lambda s: s.timestamp_ms)


def moving_average(samples: list[PriceSample], period: int) -> Decimal:
    """Mean price of the ``period`` most recent samples.

    Raises:
        ValueError: If period is not positive.
        InsufficientHistory: If fewer than ``period`` samples exist.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if len(samples) < period:
        raise InsufficientHistory(
            f"Need {period} samples for moving average, have {len(samples)}"
        )

    recent = _ordered(samples)[-period:]
    total = sum((s.price for s in recent), Decimal("0"))
    return total / Decimal(period)


def percent_change_24h(samples: list[PriceSample]) -> Decimal:
    """Percent change between the latest sample and the one nearest to 24h before it.

    The reference is the sample whose timestamp is closest (absolute
    difference) to ``latest - 24h``. On equal distance the earliest such
    sample wins.

    Raises:
        InsufficientHistory: If fewer than 2 samples exist.
    """
    if len(samples) < 2:
        raise InsufficientHistory(
            f"Need 2 samples for 24h change, have {len(samples)}"
        )

    ordered = _ordered(samples)
    latest = ordered[-1]
    target_ms = latest.timestamp_ms - _ONE_DAY_MS

    # min() keeps the first minimum
    reference = min(ordered, key=lambda s: abs(s.timestamp_ms - target_ms))

    return (latest.price - reference.price) / reference.price * _HUNDRED


def momentum_factor(percent_change: Decimal) -> Decimal:
    """Map a 24h percent change to a sizing factor in [0.1, 1.9]."""
    if percent_change > 0:
        if percent_change < _LOW_BREAK:
            return Decimal("1.0") + percent_change / _LOW_SLOPE
        if percent_change < _HIGH_BREAK:
            return Decimal("1.4") + (percent_change - _LOW_BREAK) / _MID_SLOPE
        return Decimal("1.7") + min((percent_change - _HIGH_BREAK) / _HIGH_SLOPE, _HIGH_CAP)

    magnitude = abs(percent_change)
    if magnitude < _LOW_BREAK:
        return Decimal("1.0") - magnitude / _LOW_SLOPE
    if magnitude < _HIGH_BREAK:
        return Decimal("0.7") - (magnitude - _LOW_BREAK) / _MID_SLOPE
    return Decimal("0.3") - min((magnitude - _HIGH_BREAK) / _HIGH_SLOPE, _HIGH_CAP)


def analyze(samples: list[PriceSample]) -> SizingDecision:
    """Build a SizingDecision from price samples.

    With fewer than SHORT_WINDOW samples the decision is neutral
    (factor 1.0, zeroed averages). The long average uses
    ``min(LONG_WINDOW, len(samples))`` samples so short history still sizes.
    """
    if len(samples) < SHORT_WINDOW:
        return SizingDecision.neutral(
            reason=f"insufficient_history:{len(samples)}<{SHORT_WINDOW}"
        )

    ma_short = moving_average(samples, SHORT_WINDOW)
    ma_long = moving_average(samples, min(LONG_WINDOW, len(samples)))
    change = percent_change_24h(samples)

    return SizingDecision(
        moving_average_7d=ma_short,
        moving_average_30d=ma_long,
        price_change_24h=change,
        momentum_factor=momentum_factor(change),
        is_trend_up=change > 0,
    )
