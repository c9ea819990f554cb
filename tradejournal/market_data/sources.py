"""
External quote and series sources.

Sources are the fallible, rate-sensitive boundary behind the caches. Every
adapter turns its transport failures into ``FetchError`` so the caches have
one error type to handle.

Adapters:
- Script sources: JSON POST to a script-backed web endpoint (aiohttp)
- Exchange sources: ccxt async tickers and paged OHLCV
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
import ccxt.async_support as ccxt
import structlog

from tradejournal.core.config import MarketDataConfig, market_data_config
from tradejournal.core.exceptions import FetchError
from tradejournal.core.models import Candle, PriceUpdate, ensure_utc

logger = structlog.get_logger(__name__)


# =============================================================================
# Retry
# =============================================================================

class RetryConfig:
    """Configuration for retry behavior."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
):
    """Decorator retrying retryable FetchErrors with exponential backoff.

    ``max_retries`` and ``base_delay`` may be overridden per instance through
    ``self.max_retries`` / ``self.retry_base_delay`` on the decorated method's
    owner.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            retries = getattr(self, "max_retries", max_retries)
            delay_base = getattr(self, "retry_base_delay", base_delay)
            last_exception = None

            for attempt in range(retries + 1):
                try:
                    return await func(self, *args, **kwargs)
                except FetchError as e:
                    last_exception = e
                    if not e.retryable or attempt >= retries:
                        break
                    delay = min(delay_base * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"{func.__name__}.retry_attempt",
                        source=e.source,
                        attempt=attempt + 1,
                        max_retries=retries,
                        delay=delay,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=retries,
                last_error=str(last_exception)
            )
            raise last_exception
        return wrapper
    return decorator


# =============================================================================
# Source Interfaces
# =============================================================================

class QuoteSource(ABC):
    """Batch price feed."""

    name = "quote_source"

    async def initialize(self):
        """Open connections. Optional."""

    async def close(self):
        """Release connections. Optional."""

    @abstractmethod
    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceUpdate]:
        """Fetch the latest price for each symbol.

        Symbols the source has no price for are left out of the result.

        Raises:
            FetchError: If the source is unreachable or answers with an error
        """


class SeriesSource(ABC):
    """OHLCV history feed."""

    name = "series_source"

    async def initialize(self):
        """Open connections. Optional."""

    async def close(self):
        """Release connections. Optional."""

    @abstractmethod
    async def fetch_series(
        self, symbol: str, start: datetime, end: datetime
    ) -> List[Candle]:
        """Fetch candles for ``symbol`` between ``start`` and ``end``, oldest first.

        Raises:
            FetchError: If the source is unreachable or answers with an error
        """


# =============================================================================
# Parsing Helpers
# =============================================================================

def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _parse_time(value: Any) -> Optional[datetime]:
    """Parse epoch milliseconds/seconds or an ISO string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def parse_price_payload(payload: Dict[str, Any]) -> Dict[str, PriceUpdate]:
    """Parse a ``{"prices": {...}, "timestamp": ...}`` quote response.

    Each price may be a bare number or ``{"price": ..., "lastUpdate": ...}``.
    Unparseable prices are skipped.

    Raises:
        ValueError: If ``prices`` is not a mapping
    """
    prices = payload.get("prices") or {}
    if not isinstance(prices, dict):
        raise ValueError(f"prices must be a mapping, got {type(prices).__name__}")
    as_of = payload.get("timestamp")
    result: Dict[str, PriceUpdate] = {}

    for symbol, raw in prices.items():
        if isinstance(raw, dict):
            price = _to_decimal(raw.get("price"))
            updated = raw.get("lastUpdate") or as_of
        else:
            price = _to_decimal(raw)
            updated = as_of
        if price is None or price < 0:
            logger.debug("sources.price_skipped", symbol=symbol, raw=str(raw))
            continue
        result[str(symbol).upper()] = PriceUpdate(
            price=price, as_of=str(updated) if updated is not None else None
        )

    return result


def parse_candle_rows(rows: List[Dict[str, Any]]) -> List[Candle]:
    """Parse candle rows keyed by time/date/timestamp plus OHLCV.

    Raises:
        ValueError: If a row is not a mapping
    """
    candles = []
    for row in rows:
        if not isinstance(row, dict):
            raise ValueError(f"candle row must be a mapping, got {type(row).__name__}")
        time = _parse_time(row.get("time") or row.get("date") or row.get("timestamp"))
        values = [_to_decimal(row.get(k)) for k in ("open", "high", "low", "close")]
        if time is None or any(v is None for v in values):
            continue
        open_, high, low, close = values
        candles.append(Candle(
            time=time,
            open=open_,
            high=max(high, low),
            low=min(high, low),
            close=close,
            volume=_to_decimal(row.get("volume")) or Decimal("0"),
        ))
    candles.sort(key=lambda c: c.time)
    return candles


# =============================================================================
# Script-Backed Sources (aiohttp)
# =============================================================================

class _ScriptEndpoint:
    """Shared HTTP session for a script-backed endpoint."""

    name = "script"

    def __init__(self, url: str, timeout_seconds: int = 30, max_retries: int = 3,
                 retry_base_delay: float = 1.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        """Create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={"Accept": "application/json"},
            )

    async def close(self):
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_json(self, body: Dict[str, Any], symbols: Iterable[str]) -> Any:
        if not self.url:
            raise FetchError("script url not configured", source=self.name,
                             symbols=symbols, retryable=False)
        await self.initialize()

        try:
            async with self._session.post(self.url, json=body) as response:
                if response.status != 200:
                    raise FetchError(
                        f"HTTP {response.status}",
                        source=self.name,
                        symbols=symbols,
                        retryable=response.status in (408, 429) or response.status >= 500,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"network error: {e}", source=self.name, symbols=symbols) from e
        except ValueError as e:
            raise FetchError(f"invalid JSON: {e}", source=self.name,
                             symbols=symbols, retryable=False) from e

        if isinstance(data, dict) and data.get("error"):
            raise FetchError(str(data["error"]), source=self.name,
                             symbols=symbols, retryable=False)
        return data


class ScriptQuoteSource(_ScriptEndpoint, QuoteSource):
    """Quotes from a script-backed endpoint.

    Request: ``{"type": "market_data", "tickers": [...]}``
    Response: ``{"prices": {"AAPL": 190.1, ...}, "timestamp": "..."}``
    """

    name = "script_quotes"

    @with_retry()
    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceUpdate]:
        symbols = sorted(set(symbols))
        if not symbols:
            return {}
        data = await self._post_json({"type": "market_data", "tickers": symbols}, symbols)
        if not isinstance(data, dict):
            raise FetchError("unexpected quote payload", source=self.name,
                             symbols=symbols, retryable=False)
        try:
            prices = parse_price_payload(data)
        except ValueError as e:
            raise FetchError(f"malformed quote payload: {e}", source=self.name,
                             symbols=symbols, retryable=False) from e
        logger.debug("script_quotes.fetched", requested=len(symbols), received=len(prices))
        return prices


class ScriptSeriesSource(_ScriptEndpoint, SeriesSource):
    """OHLCV history from a script-backed endpoint.

    Request: ``{"type": "historical_data", "ticker": ..., "startDate": ..., "endDate": ...}``
    Response: list of ``{"date", "open", "high", "low", "close", "volume"}``
    """

    name = "script_series"

    @with_retry()
    async def fetch_series(self, symbol: str, start: datetime, end: datetime) -> List[Candle]:
        body = {
            "type": "historical_data",
            "ticker": symbol,
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
        }
        data = await self._post_json(body, [symbol])
        if isinstance(data, dict):
            data = data.get("data") or []
        if not isinstance(data, list):
            raise FetchError("unexpected series payload", source=self.name,
                             symbols=[symbol], retryable=False)
        try:
            return parse_candle_rows(data)
        except ValueError as e:
            raise FetchError(f"malformed series payload: {e}", source=self.name,
                             symbols=[symbol], retryable=False) from e


# =============================================================================
# Exchange Sources (ccxt)
# =============================================================================

class _ExchangeConnection:
    """Lazily created ccxt async exchange."""

    name = "exchange"

    def __init__(self, exchange_id: str = "binance", timeframe: str = "1d",
                 max_retries: int = 3, retry_base_delay: float = 1.0):
        self.exchange_id = exchange_id
        self.timeframe = timeframe
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.exchange = None

    async def initialize(self):
        """Initialize exchange connection."""
        if self.exchange is None:
            self.exchange = getattr(ccxt, self.exchange_id)({"enableRateLimit": True})
            logger.info("exchange_source.initialized", exchange=self.exchange_id)

    async def close(self):
        """Close exchange connection."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None

    def _wrap(self, error: Exception, symbols: Iterable[str]) -> FetchError:
        retryable = isinstance(error, (ccxt.NetworkError, ccxt.ExchangeNotAvailable))
        return FetchError(str(error), source=f"{self.name}:{self.exchange_id}",
                          symbols=symbols, retryable=retryable)


class ExchangeQuoteSource(_ExchangeConnection, QuoteSource):
    """Last prices from a ccxt exchange's tickers."""

    name = "exchange_quotes"

    @with_retry()
    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceUpdate]:
        symbols = sorted(set(symbols))
        if not symbols:
            return {}
        await self.initialize()

        try:
            tickers = await self.exchange.fetch_tickers(symbols)
        except ccxt.BaseError as e:
            raise self._wrap(e, symbols) from e

        result: Dict[str, PriceUpdate] = {}
        for symbol, ticker in tickers.items():
            price = _to_decimal(ticker.get("last") or ticker.get("close"))
            if price is None:
                continue
            result[symbol.upper()] = PriceUpdate(price=price, as_of=ticker.get("datetime"))
        return result


class ExchangeSeriesSource(_ExchangeConnection, SeriesSource):
    """OHLCV history from a ccxt exchange, paged by ``limit``."""

    name = "exchange_series"
    page_limit = 1000

    @with_retry()
    async def fetch_series(self, symbol: str, start: datetime, end: datetime) -> List[Candle]:
        await self.initialize()

        since = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)
        all_ohlcv: List[list] = []

        while since <= end_ms:
            try:
                ohlcv = await self.exchange.fetch_ohlcv(
                    symbol, timeframe=self.timeframe, since=since, limit=self.page_limit
                )
            except ccxt.BaseError as e:
                raise self._wrap(e, [symbol]) from e

            if not ohlcv:
                break

            all_ohlcv.extend(row for row in ohlcv if row[0] <= end_ms)

            last_timestamp = ohlcv[-1][0]
            if last_timestamp >= end_ms or len(ohlcv) < self.page_limit:
                break
            since = last_timestamp + 1

        return [
            Candle(
                time=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
                open=Decimal(str(row[1])),
                high=Decimal(str(row[2])),
                low=Decimal(str(row[3])),
                close=Decimal(str(row[4])),
                volume=Decimal(str(row[5] or 0)),
            )
            for row in all_ohlcv
        ]


# =============================================================================
# Factories
# =============================================================================

def create_quote_source(config: Optional[MarketDataConfig] = None) -> QuoteSource:
    """Build the configured quote source."""
    config = config or market_data_config
    if config.provider == "exchange":
        return ExchangeQuoteSource(
            exchange_id=config.exchange_id,
            timeframe=config.timeframe,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
        )
    return ScriptQuoteSource(
        url=config.script_url,
        timeout_seconds=config.timeout_seconds,
        max_retries=config.max_retries,
        retry_base_delay=config.retry_base_delay,
    )


def create_series_source(config: Optional[MarketDataConfig] = None) -> SeriesSource:
    """Build the configured series source."""
    config = config or market_data_config
    if config.provider == "exchange":
        return ExchangeSeriesSource(
            exchange_id=config.exchange_id,
            timeframe=config.timeframe,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
        )
    return ScriptSeriesSource(
        url=config.script_url,
        timeout_seconds=config.timeout_seconds,
        max_retries=config.max_retries,
        retry_base_delay=config.retry_base_delay,
    )
