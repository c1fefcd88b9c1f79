"""External data feeds -- historical prices and lending market snapshots."""

from dca.feeds.market_feed import JouleMarketFeed, MarketFeed
from dca.feeds.price_feed import CoinGeckoPriceFeed, ExchangePriceFeed, PriceFeed

__all__ = [
    "CoinGeckoPriceFeed",
    "ExchangePriceFeed",
    "JouleMarketFeed",
    "MarketFeed",
    "PriceFeed",
]
