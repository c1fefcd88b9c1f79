"""Tests for the risk tier multiplier mapping."""

from decimal import Decimal

import pytest

from dca.analysis.risk import risk_multiplier
from dca.models import RiskTier


@pytest.mark.parametrize(
    ("tier", "expected"),
    [
        (RiskTier.NO_RISK, Decimal("1.0")),
        (RiskTier.LOW_RISK, Decimal("1.2")),
        (RiskTier.MEDIUM_RISK, Decimal("1.5")),
        (RiskTier.HIGH_RISK, Decimal("2.0")),
        ("high_risk", Decimal("2.0")),
    ],
)
def test_known_tiers(tier: RiskTier | str, expected: Decimal) -> None:
    assert risk_multiplier(tier) == expected


@pytest.mark.parametrize("tier", ["reckless", "", None])
def test_unknown_tier_defaults_to_one(tier: str | None) -> None:
    assert risk_multiplier(tier) == Decimal("1.0")
