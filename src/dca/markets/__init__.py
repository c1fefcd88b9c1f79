"""Lending market layer -- best-market ranking and its timestamped cache."""

from dca.markets.cache import BestMarketCache, BestMarketEntry, MarketSource
from dca.markets.ranker import MarketRanker, select_best

__all__ = ["BestMarketCache", "BestMarketEntry", "MarketRanker", "MarketSource", "select_best"]
