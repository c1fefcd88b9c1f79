"""Lending market ranking and best-market selection.

Core formula:
  total_deposit_apy = deposit_apy + extra_deposit_apy
  best = argmax(total_deposit_apy), ties resolved by first-seen order

The selection is cached as a timestamped BestMarketEntry. Readers go through
get_best(), which refreshes the entry once it is older than the TTL. Refreshes
are serialized by the ranker's own lock, independent of plan execution.
"""

import asyncio
import time
from collections.abc import Callable

from dca.config import MarketSettings
from dca.exceptions import MarketFeedError, NoMarketsAvailable
from dca.feeds.market_feed import FALLBACK_MARKETS, MarketFeed
from dca.feeds.retry import fetch_with_retry
from dca.logging import get_logger
from dca.markets.cache import BestMarketCache, BestMarketEntry, MarketSource
from dca.models import Market

logger = get_logger(__name__)


def select_best(markets: list[Market]) -> Market:
    """Return the market with the highest combined deposit APY.

    Raises:
        NoMarketsAvailable: If ``markets`` is empty.
    """
    if not markets:
        raise NoMarketsAvailable("No lending markets to rank")

    best = markets[0]
    for market in markets[1:]:
        if market.total_deposit_apy > best.total_deposit_apy:
            best = market
    return best


class MarketRanker:
    """Fetches markets, selects the best one and owns the best-market cache.

    Args:
        feed: Lending market source.
        settings: Cache TTL, refresh interval, retry and fallback policy.
        cache: Best-market pointer (optionally file-backed).
        clock: Time source returning Unix seconds.
    """

    def __init__(
        self,
        feed: MarketFeed,
        settings: MarketSettings,
        cache: BestMarketCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._feed = feed
        self._settings = settings
        self._cache = cache or BestMarketCache()
        self._clock = clock
        self._markets: list[Market] = []
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    async def fetch_markets(self) -> list[Market]:
        """Pull market snapshots with bounded retry (read-only call)."""
        return await fetch_with_retry(
            self._feed.get_all_markets,
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_base_delay,
            timeout=self._settings.timeout_seconds,
        )

    async def refresh(self) -> BestMarketEntry:
        """Re-rank markets and replace the cached selection.

        Raises:
            NoMarketsAvailable: If the feed returns no markets.
            MarketFeedError: If the feed fails and fallback is disabled.
        """
        async with self._lock:
            return await self._refresh_locked()

    async def get_best(self) -> BestMarketEntry:
        """Return the cached selection, refreshing it if missing or stale."""
        entry = self._cache.get()
        if entry is not None and entry.is_fresh(self._settings.cache_ttl_seconds, self._clock()):
            logger.debug("best_market_cache_hit", asset=entry.market.asset_name)
            return entry

        async with self._lock:
            # Another caller may have refreshed while we waited
            entry = self._cache.get()
            if entry is not None and entry.is_fresh(
                self._settings.cache_ttl_seconds, self._clock()
            ):
                return entry
            return await self._refresh_locked()

    def peek(self) -> BestMarketEntry | None:
        """Return the cached selection without refreshing (may be stale)."""
        return self._cache.get()

    def get_markets(self) -> list[Market]:
        """Return the markets seen by the last refresh."""
        return list(self._markets)

    def is_fresh(self, entry: BestMarketEntry) -> bool:
        return entry.is_fresh(self._settings.cache_ttl_seconds, self._clock())

    async def _refresh_locked(self) -> BestMarketEntry:
        source = MarketSource.LIVE
        try:
            markets = await self.fetch_markets()
        except (MarketFeedError, TimeoutError) as e:
            if not self._settings.allow_fallback:
                raise
            logger.warning(
                "market_feed_fallback",
                error=str(e) or type(e).__name__,
                note="Serving static example markets, labelled as fallback",
            )
            markets = list(FALLBACK_MARKETS)
            source = MarketSource.FALLBACK

        best = select_best(markets)
        entry = BestMarketEntry(
            market=best,
            selected_at=self._clock(),
            source=source,
            candidates=len(markets),
        )
        self._markets = markets
        self._cache.set(entry)

        logger.info(
            "best_market_selected",
            asset=best.asset_name,
            total_deposit_apy=str(best.total_deposit_apy),
            candidates=len(markets),
            source=source.value,
        )
        return entry

    async def start(self) -> None:
        """Begin refreshing the best market in the background."""
        if self._running:
            logger.warning("market_ranker_already_running")
            return
        self._cache.load(self._settings.cache_ttl_seconds, self._clock())
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(
            "market_ranker_started",
            refresh_interval=self._settings.refresh_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the background refresh loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("market_ranker_stopped")

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("market_refresh_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.refresh_interval_seconds)
