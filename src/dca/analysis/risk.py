"""Risk tier to trade-size multiplier mapping."""

from decimal import Decimal

from dca.models import RiskTier

RISK_MULTIPLIERS: dict[RiskTier, Decimal] = {
    RiskTier.NO_RISK: Decimal("1.0"),
    RiskTier.LOW_RISK: Decimal("1.2"),
    RiskTier.MEDIUM_RISK: Decimal("1.5"),
    RiskTier.HIGH_RISK: Decimal("2.0"),
}

_DEFAULT_MULTIPLIER = Decimal("1.0")


def risk_multiplier(tier: RiskTier | str | None) -> Decimal:
    """Return the multiplier for a risk tier. Unrecognized tiers map to 1.0."""
    try:
        return RISK_MULTIPLIERS[RiskTier(tier)]
    except (ValueError, KeyError):
        return _DEFAULT_MULTIPLIER
