"""Best-market cache entry with an explicit freshness timestamp.

BestMarketCache holds the single "current best market" pointer in memory and
optionally mirrors it to a JSON artifact so a restart can reuse a recent
selection. Consumers never trust an entry without checking its age: an entry
older than the configured TTL is refreshed, and a persisted entry that is
already stale on load is discarded.
"""

import os
import time
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ValidationError

from dca.logging import get_logger
from dca.models import Market

logger = get_logger(__name__)


class MarketSource(str, Enum):
    LIVE = "live"
    FALLBACK = "fallback"  # static example data, never deposit into it


class BestMarketEntry(BaseModel):
    """A ranked market selection and when it was made."""

    market: Market
    selected_at: float  # Unix seconds
    source: MarketSource = MarketSource.LIVE
    candidates: int = 0

    @property
    def is_live(self) -> bool:
        return self.source is MarketSource.LIVE

    def age_seconds(self, now: float | None = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, current - self.selected_at)

    def is_fresh(self, ttl_seconds: float, now: float | None = None) -> bool:
        return self.age_seconds(now) <= ttl_seconds


class BestMarketCache:
    """Single global best-market pointer with optional file persistence.

    Args:
        path: JSON artifact location, or None for memory only.
    """

    def __init__(self, path: str | None = None) -> None:
        self._path = Path(path) if path else None
        self._entry: BestMarketEntry | None = None

    def get(self) -> BestMarketEntry | None:
        return self._entry

    def set(self, entry: BestMarketEntry) -> None:
        self._entry = entry
        if self._path is not None:
            self._write(self._path, entry)

    def load(self, ttl_seconds: float, now: float | None = None) -> BestMarketEntry | None:
        """Load the persisted entry if it exists and is still fresh."""
        if self._path is None or not self._path.exists():
            return None

        try:
            entry = BestMarketEntry.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("market_cache_unreadable", path=str(self._path), error=str(e))
            return None

        if not entry.is_fresh(ttl_seconds, now):
            logger.info(
                "market_cache_stale_on_load",
                path=str(self._path),
                age_seconds=round(entry.age_seconds(now), 1),
            )
            return None

        self._entry = entry
        logger.info(
            "market_cache_loaded",
            asset=entry.market.asset_name,
            source=entry.source.value,
        )
        return entry

    def _write(self, path: Path, entry: BestMarketEntry) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
