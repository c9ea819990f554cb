"""
Market data layer.

Caches in front of fallible external sources:
- QuoteCache: latest price per symbol, TTL, single in-flight batch fetch
- SeriesCache: OHLCV series per (symbol, start, end), TTL, bounded LRU
- Sources: script-backed (aiohttp) and exchange-backed (ccxt) adapters
"""

from tradejournal.market_data.quote_cache import QuoteCache
from tradejournal.market_data.series_cache import SeriesCache
from tradejournal.market_data.sources import (ExchangeQuoteSource,
                                              ExchangeSeriesSource,
                                              QuoteSource, ScriptQuoteSource,
                                              ScriptSeriesSource, SeriesSource,
                                              create_quote_source,
                                              create_series_source, with_retry)

__all__ = [
    "QuoteCache",
    "SeriesCache",
    "QuoteSource",
    "SeriesSource",
    "ScriptQuoteSource",
    "ScriptSeriesSource",
    "ExchangeQuoteSource",
    "ExchangeSeriesSource",
    "create_quote_source",
    "create_series_source",
    "with_retry",
]
