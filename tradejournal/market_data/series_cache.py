"""
OHLCV series cache.

Entries are keyed by symbol, start and end time. An end time within the
ongoing tolerance of "now" maps to a shared "ongoing" slot, so repeated
queries for an open position's history reuse one entry.

Expired entries are purged whenever something is inserted and are misses on
read even before that. When full, inserting evicts the least recently read
entry; ties go to the earliest inserted.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog

from tradejournal.core.config import SeriesCacheConfig, series_cache_config
from tradejournal.core.exceptions import FetchError
from tradejournal.core.models import CachedSeriesEntry, Candle, Outcome, utc_now
from tradejournal.market_data.sources import SeriesSource

logger = structlog.get_logger(__name__)

ONGOING = "ongoing"


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class SeriesCache:
    """Bounded TTL cache of OHLCV series with least-recently-read eviction."""

    def __init__(
        self,
        source: Optional[SeriesSource] = None,
        ttl_seconds: Optional[int] = None,
        max_entries: Optional[int] = None,
        ongoing_tolerance_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[SeriesCacheConfig] = None,
    ):
        config = config or series_cache_config
        self.source = source
        self.ttl = timedelta(
            seconds=config.ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self.max_entries = config.max_entries if max_entries is None else max_entries
        self.ongoing_tolerance = timedelta(
            seconds=(
                config.ongoing_tolerance_seconds
                if ongoing_tolerance_seconds is None
                else ongoing_tolerance_seconds
            )
        )
        if self.max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self._clock = clock or utc_now

        # Dict order is insertion order, which breaks last-access ties
        self._entries: Dict[str, CachedSeriesEntry] = {}

        # Stats
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    async def initialize(self):
        """Initialize the underlying source, if any."""
        if self.source is not None:
            await self.source.initialize()
        logger.info(
            "series_cache.initialized",
            max_entries=self.max_entries,
            ttl_seconds=self.ttl.total_seconds(),
        )

    async def close(self):
        """Drop all entries and close the source."""
        self.clear()
        if self.source is not None:
            await self.source.close()

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries)

    def make_key(self, symbol: str, start: datetime, end: Optional[datetime] = None) -> str:
        """Deterministic cache key for a (symbol, start, end) request."""
        now = self._clock()
        if end is None or abs(end - now) <= self.ongoing_tolerance:
            end_part = ONGOING
        else:
            end_part = str(_epoch_ms(end))
        return f"{symbol.strip().upper()}_{_epoch_ms(start)}_{end_part}"

    def get(
        self, symbol: str, start: datetime, end: Optional[datetime] = None
    ) -> Optional[List[Candle]]:
        """Cached candles for the request, or None on a miss or expired entry."""
        key = self.make_key(symbol, start, end)
        entry = self._entries.get(key)
        now = self._clock()

        if entry is None or entry.is_expired(now):
            self.misses += 1
            return None

        entry.last_accessed_at = now
        self.hits += 1
        return list(entry.candles)

    def put(
        self,
        symbol: str,
        start: datetime,
        end: Optional[datetime],
        candles: List[Candle],
    ) -> str:
        """Insert or replace the series for the request and return its key."""
        now = self._clock()
        self.purge_expired(now)

        key = self.make_key(symbol, start, end)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._evict_least_recent()

        self._entries[key] = CachedSeriesEntry(
            key=key,
            candles=list(candles),
            inserted_at=now,
            expires_at=now + self.ttl,
            last_accessed_at=now,
        )
        return key

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Remove expired entries and return how many were removed."""
        now = now or self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("series_cache.purged", count=len(expired))
        return len(expired)

    def clear(self):
        """Drop all entries."""
        self._entries.clear()

    def _evict_least_recent(self):
        # min() keeps the first of equal keys, i.e. the earliest inserted
        key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        del self._entries[key]
        self.evictions += 1
        logger.debug("series_cache.evicted", key=key)

    # =========================================================================
    # Read-Through
    # =========================================================================

    async def load(
        self, symbol: str, start: datetime, end: Optional[datetime] = None
    ) -> Outcome[List[Candle]]:
        """Cached series for the request, fetching from the source on a miss.

        Returns:
            OK with candles, or FAILED with an empty list when the source
            is missing or fails
        """
        cached = self.get(symbol, start, end)
        if cached is not None:
            return Outcome.ok(cached)

        if self.source is None:
            return Outcome.failed("no series source configured", value=[])

        try:
            candles = await self.source.fetch_series(symbol, start, end or self._clock())
        except FetchError as e:
            logger.warning("series_cache.fetch_failed", symbol=symbol, error=str(e))
            return Outcome.failed(f"series fetch failed for {symbol}: {e}", value=[])
        except Exception as e:
            logger.error(
                "series_cache.source_error",
                symbol=symbol,
                error=str(e),
                error_type=type(e).__name__,
            )
            return Outcome.failed(
                f"series fetch failed for {symbol}: {type(e).__name__}: {e}", value=[]
            )

        self.put(symbol, start, end, candles)
        return Outcome.ok(candles)
