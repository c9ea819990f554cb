"""Pytest fixtures and utilities for the trade journal test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from tradejournal.core.config import (MetricsConfig, QuoteCacheConfig,
                                      SeriesCacheConfig)
from tradejournal.core.models import (ActionType, Candle, CapitalSnapshot,
                                      PriceUpdate, Quote, Trade, TradeAction,
                                      TradeDirection)
from tradejournal.market_data.quote_cache import QuoteCache
from tradejournal.market_data.series_cache import SeriesCache
from tradejournal.market_data.sources import QuoteSource, SeriesSource
from tradejournal.storage.database import Database


# =============================================================================
# Clock
# =============================================================================

# Tuesday 2024-03-12 15:00 UTC (11:00 in New York)
BASE_TIME = datetime(2024, 3, 12, 15, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Manual clock starting at BASE_TIME."""
    return ManualClock()


# =============================================================================
# Fake Sources
# =============================================================================

class FakeQuoteSource(QuoteSource):
    """In-memory quote source recording every batch it is asked for."""

    name = "fake_quotes"

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.calls: List[List[str]] = []
        self.fail_with: Optional[Exception] = None

    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, PriceUpdate]:
        symbols = list(symbols)
        self.calls.append(symbols)
        if self.fail_with is not None:
            raise self.fail_with
        return {
            s: PriceUpdate(price=self.prices[s], as_of="2024-03-12 11:00")
            for s in symbols
            if s in self.prices
        }


class FakeSeriesSource(SeriesSource):
    """In-memory series source returning fixed candles."""

    name = "fake_series"

    def __init__(self, candles: Optional[List[Candle]] = None):
        self.candles = list(candles or [])
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    async def fetch_series(self, symbol: str, start: datetime, end: datetime) -> List[Candle]:
        self.calls.append((symbol, start, end))
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.candles)


@pytest.fixture
def quote_source():
    """Quote source with prices for a few tickers."""
    return FakeQuoteSource({
        "AAPL": Decimal("110"),
        "MSFT": Decimal("420"),
        "NVDA": Decimal("900"),
    })


@pytest.fixture
def series_source():
    """Series source with three daily candles."""
    return FakeSeriesSource([
        make_candle(BASE_TIME - timedelta(days=2), "100", "104", "97", "103"),
        make_candle(BASE_TIME - timedelta(days=1), "103", "112", "101", "110"),
        make_candle(BASE_TIME, "110", "111", "95", "108"),
    ])


# =============================================================================
# Cache Fixtures
# =============================================================================

@pytest.fixture
def quote_cache(quote_source, clock):
    """Quote cache with a 30 minute TTL and 4 hour stale tolerance."""
    return QuoteCache(
        quote_source,
        clock=clock,
        config=QuoteCacheConfig(ttl_seconds=1800, stale_tolerance_seconds=14400),
    )


@pytest.fixture
def series_cache(series_source, clock):
    """Series cache with capacity 50 and 24 hour TTL."""
    return SeriesCache(
        series_source,
        clock=clock,
        config=SeriesCacheConfig(ttl_seconds=86400, max_entries=50),
    )


@pytest.fixture
def metrics_config():
    """Metrics configuration with the default starting capital."""
    return MetricsConfig(
        default_starting_capital=Decimal("25000"),
        new_exposure_days=7,
        timezone="America/New_York",
    )


# =============================================================================
# Model Factories
# =============================================================================

def make_candle(time: datetime, open_: str, high: str, low: str, close: str) -> Candle:
    return Candle(
        time=time,
        open=Decimal(open_),
        high=Decimal(high),
        low=Decimal(low),
        close=Decimal(close),
        volume=Decimal("1000"),
    )


def make_quote(symbol: str, price: str, fetched_at: datetime = BASE_TIME) -> Quote:
    return Quote(symbol=symbol, price=Decimal(price), fetched_at=fetched_at)


def open_trade(
    ticker: str = "AAPL",
    shares: str = "50",
    price: str = "100",
    stop: Optional[str] = "90",
    opened_at: datetime = BASE_TIME,
    **kwargs
) -> Trade:
    """OPEN trade from a single BUY."""
    return Trade.open(
        ticker=ticker,
        shares=Decimal(shares),
        price=Decimal(price),
        stop_loss_price=Decimal(stop) if stop is not None else None,
        timestamp=opened_at,
        **kwargs
    )


def closed_trade(
    ticker: str = "AAPL",
    entry: str = "100",
    exit_price: str = "110",
    shares: str = "10",
    stop: str = "90",
    opened_at: datetime = BASE_TIME - timedelta(days=10),
    closed_at: datetime = BASE_TIME - timedelta(days=1),
    direction: TradeDirection = TradeDirection.LONG,
) -> Trade:
    """CLOSED trade from one BUY and one SELL."""
    return Trade.from_actions(
        ticker,
        [
            TradeAction(action_type=ActionType.BUY, timestamp=opened_at,
                        shares=Decimal(shares), price=Decimal(entry)),
            TradeAction(action_type=ActionType.SELL, timestamp=closed_at,
                        shares=Decimal(shares), price=Decimal(exit_price)),
        ],
        stop_loss_price=Decimal(stop),
        direction=direction,
    )


def snapshot(capital: str, day: int, high: Optional[str] = None,
             low: Optional[str] = None, user_id: str = "user-1") -> CapitalSnapshot:
    """Capital snapshot ``day`` days after BASE_TIME."""
    return CapitalSnapshot(
        user_id=user_id,
        timestamp=BASE_TIME + timedelta(days=day),
        capital=Decimal(capital),
        day_high=Decimal(high) if high is not None else None,
        day_low=Decimal(low) if low is not None else None,
        is_end_of_day=True,
    )


@pytest.fixture
def sample_open_trade():
    """OPEN trade: 50 AAPL @ 100, stop 90."""
    return open_trade()


@pytest.fixture
def sample_closed_trade():
    """CLOSED winning trade: 10 AAPL 100 -> 110, stop 90."""
    return closed_trade()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()
