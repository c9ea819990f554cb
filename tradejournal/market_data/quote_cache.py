"""
Quote cache.

Holds the most recently fetched price per symbol in front of a fallible
quote source. Symbols whose quote is younger than the TTL are served from
memory; the rest are fetched in one batch.

Concurrency policy: at most one batch fetch is outstanding per cache. A
caller arriving while a fetch is in flight awaits that fetch and takes its
result for the symbols it covered, success or failure. Only symbols the
shared fetch did not cover are fetched afterwards, so a symbol requested by
concurrent callers reaches the source once.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from tradejournal.core.config import QuoteCacheConfig, quote_cache_config
from tradejournal.core.exceptions import FetchError
from tradejournal.core.models import Outcome, Quote, utc_now
from tradejournal.market_data.sources import QuoteSource

logger = structlog.get_logger(__name__)


def normalize_symbols(symbols: Iterable[str]) -> Set[str]:
    """Uppercase, strip and de-duplicate symbols, skipping blanks."""
    return {s.strip().upper() for s in symbols if s and s.strip()}


class QuoteCache:
    """
    TTL cache of quotes with a single in-flight batch fetch.

    On fetch failure, previously cached quotes are served as long as they are
    within the stale tolerance window; the result is then DEGRADED. With no
    usable quotes at all the result is FAILED with an empty mapping.
    """

    def __init__(
        self,
        source: QuoteSource,
        ttl_seconds: Optional[int] = None,
        stale_tolerance_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[QuoteCacheConfig] = None,
    ):
        config = config or quote_cache_config
        self.source = source
        self.ttl = timedelta(
            seconds=config.ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self.stale_tolerance = timedelta(
            seconds=(
                config.stale_tolerance_seconds
                if stale_tolerance_seconds is None
                else stale_tolerance_seconds
            )
        )
        self._clock = clock or utc_now

        self._entries: Dict[str, Quote] = {}
        self._inflight: Optional[asyncio.Future] = None
        self._inflight_symbols: Set[str] = set()

        # Stats
        self.fetch_count = 0
        self.failed_fetch_count = 0

    async def initialize(self):
        """Initialize the underlying source."""
        await self.source.initialize()
        logger.info(
            "quote_cache.initialized",
            ttl_seconds=self.ttl.total_seconds(),
            stale_tolerance_seconds=self.stale_tolerance.total_seconds(),
        )

    async def close(self):
        """Wait for any in-flight fetch, drop all entries and close the source."""
        if self._inflight is not None:
            await asyncio.shield(self._inflight)
        self.clear()
        await self.source.close()
        logger.info("quote_cache.closed")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._entries

    @property
    def fetch_in_flight(self) -> bool:
        return self._inflight is not None

    def peek(self, symbol: str) -> Optional[Quote]:
        """Cached quote for a symbol regardless of age, without fetching."""
        return self._entries.get(symbol.upper())

    def clear(self):
        """Drop all cached quotes."""
        self._entries.clear()

    def clear_symbols(self, symbols: Iterable[str]) -> int:
        """Drop cached quotes for the given symbols, e.g. after positions close."""
        removed = 0
        for symbol in normalize_symbols(symbols):
            if self._entries.pop(symbol, None) is not None:
                removed += 1
        if removed:
            logger.debug("quote_cache.symbols_cleared", count=removed)
        return removed

    # =========================================================================
    # Lookup
    # =========================================================================

    async def get_quotes(self, symbols: Iterable[str]) -> Outcome[Dict[str, Quote]]:
        """Quotes for ``symbols``, fetching only stale or missing ones.

        A caller that waited on another caller's fetch takes that fetch's
        result for the symbols it covered, even when it failed, and only
        fetches the symbols it did not cover.

        Returns:
            Outcome whose value maps each symbol with a usable quote to it.
            OK when every symbol has a fresh quote, DEGRADED when some are
            stale or missing, FAILED (empty mapping) when none are usable.
        """
        requested = normalize_symbols(symbols)
        if not requested:
            return Outcome.ok({})

        covered: Set[str] = set()
        shared_error: Optional[FetchError] = None
        while self._inflight is not None:
            batch = self._inflight_symbols
            error = await asyncio.shield(self._inflight)
            if batch & requested:
                covered |= batch
                shared_error = error or shared_error

        fresh, stale = self._partition(requested, self._clock())
        stale -= covered
        if not stale:
            if shared_error is None and len(fresh) == len(requested):
                return Outcome.ok(fresh)
            return self._resolve(requested, shared_error)

        self._inflight_symbols = set(stale)
        self._inflight = asyncio.ensure_future(self._fetch(stale))
        error = await asyncio.shield(self._inflight)
        return self._resolve(requested, error or shared_error)

    def _partition(self, symbols: Set[str], now: datetime) -> Tuple[Dict[str, Quote], Set[str]]:
        fresh: Dict[str, Quote] = {}
        stale: Set[str] = set()
        for symbol in symbols:
            quote = self._entries.get(symbol)
            if quote is not None and now - quote.fetched_at < self.ttl:
                fresh[symbol] = quote
            else:
                stale.add(symbol)
        return fresh, stale

    async def _fetch(self, symbols: Set[str]) -> Optional[FetchError]:
        try:
            return await self._fetch_batch(symbols)
        finally:
            self._inflight = None
            self._inflight_symbols = set()

    async def _fetch_batch(self, symbols: Set[str]) -> Optional[FetchError]:
        self.fetch_count += 1
        logger.debug("quote_cache.fetching", symbols=sorted(symbols))

        try:
            updates = await self.source.fetch_quotes(sorted(symbols))
        except FetchError as e:
            self.failed_fetch_count += 1
            logger.warning(
                "quote_cache.fetch_failed",
                source=e.source,
                symbols=sorted(symbols),
                error=str(e),
            )
            return e
        except Exception as e:
            self.failed_fetch_count += 1
            logger.error(
                "quote_cache.source_error",
                source=self.source.name,
                symbols=sorted(symbols),
                error=str(e),
                error_type=type(e).__name__,
            )
            return FetchError(
                f"{type(e).__name__}: {e}",
                source=self.source.name,
                symbols=symbols,
                retryable=False,
            )

        now = self._clock()
        for symbol, update in updates.items():
            symbol = symbol.upper()
            self._entries[symbol] = Quote(
                symbol=symbol,
                price=update.price,
                fetched_at=now,
                last_update=update.as_of or now.isoformat(),
            )

        logger.debug("quote_cache.fetched", requested=len(symbols), received=len(updates))
        return None

    def _resolve(
        self, requested: Set[str], error: Optional[FetchError]
    ) -> Outcome[Dict[str, Quote]]:
        now = self._clock()
        result: Dict[str, Quote] = {}
        stale_served: List[str] = []
        missing: List[str] = []

        for symbol in sorted(requested):
            quote = self._entries.get(symbol)
            if quote is None:
                missing.append(symbol)
                continue
            age = now - quote.fetched_at
            if age < self.ttl:
                result[symbol] = quote
            elif age <= self.stale_tolerance:
                result[symbol] = quote
                stale_served.append(symbol)
            else:
                missing.append(symbol)

        if stale_served:
            logger.warning("quote_cache.serving_stale", symbols=stale_served)

        reasons = []
        if error is not None:
            reasons.append(f"quote fetch failed: {error}")
        if stale_served:
            reasons.append(f"stale quotes for {', '.join(stale_served)}")
        if missing:
            reasons.append(f"no quotes for {', '.join(missing)}")

        if not result:
            return Outcome.failed("; ".join(reasons), value={})
        if reasons:
            return Outcome.degraded(result, "; ".join(reasons))
        return Outcome.ok(result)
