"""Unit tests for the OHLCV series cache."""
import pytest
from datetime import timedelta

from tradejournal.core.exceptions import FetchError
from tradejournal.market_data.series_cache import ONGOING, SeriesCache

from conftest import BASE_TIME

START = BASE_TIME - timedelta(days=30)
END = BASE_TIME - timedelta(days=1)


class TestSeriesCacheKeys:
    """Test cache key construction."""

    def test_fixed_end_key(self, series_cache):
        key = series_cache.make_key("aapl", START, END)

        assert key == f"AAPL_{int(START.timestamp() * 1000)}_{int(END.timestamp() * 1000)}"

    def test_open_end_is_ongoing(self, series_cache):
        assert series_cache.make_key("AAPL", START).endswith(f"_{ONGOING}")

    def test_end_near_now_is_ongoing(self, series_cache, clock):
        """Test an end within the tolerance of now shares the ongoing slot."""
        near_now = clock() + timedelta(milliseconds=500)

        assert series_cache.make_key("AAPL", START, near_now) == series_cache.make_key("AAPL", START)


class TestSeriesCacheReadWrite:
    """Test get/put semantics."""

    def test_miss_then_hit(self, series_cache, series_source):
        assert series_cache.get("AAPL", START, END) is None

        series_cache.put("AAPL", START, END, series_source.candles)
        cached = series_cache.get("AAPL", START, END)

        assert len(cached) == 3
        assert series_cache.hits == 1
        assert series_cache.misses == 1

    def test_expired_entry_is_miss(self, series_cache, series_source, clock):
        """Test an entry past its TTL is a miss before any purge."""
        series_cache.put("AAPL", START, END, series_source.candles)
        clock.advance(hours=24, seconds=1)

        assert series_cache.get("AAPL", START, END) is None
        assert len(series_cache) == 1

    def test_put_purges_expired(self, series_cache, series_source, clock):
        series_cache.put("AAPL", START, END, series_source.candles)
        clock.advance(hours=25)

        series_cache.put("MSFT", START, END, series_source.candles)

        assert len(series_cache) == 1
        assert series_cache.keys()[0].startswith("MSFT_")

    def test_put_replaces_same_key(self, series_cache, series_source):
        series_cache.put("AAPL", START, END, series_source.candles)
        series_cache.put("AAPL", START, END, series_source.candles[:1])

        assert len(series_cache) == 1
        assert len(series_cache.get("AAPL", START, END)) == 1

    def test_invalid_capacity(self, series_source):
        with pytest.raises(ValueError):
            SeriesCache(series_source, max_entries=0)


class TestSeriesCacheEviction:
    """Test least-recently-read eviction at capacity."""

    def test_capacity_evicts_least_recently_read(self, series_cache, series_source, clock):
        """Test the 51st insert evicts the entry read least recently."""
        for i in range(50):
            series_cache.put(f"S{i}", START, END, series_source.candles)
            clock.advance(seconds=1)

        # Reading S0 makes S1 the least recently read entry
        assert series_cache.get("S0", START, END) is not None
        clock.advance(seconds=1)

        series_cache.put("S50", START, END, series_source.candles)

        assert len(series_cache) == 50
        assert series_cache.evictions == 1
        assert series_cache.get("S1", START, END) is None
        assert series_cache.get("S0", START, END) is not None
        assert series_cache.get("S50", START, END) is not None

    def test_ties_evict_earliest_inserted(self, series_source, clock):
        """Test equal last-access times evict in insertion order."""
        cache = SeriesCache(series_source, max_entries=2, clock=clock)
        cache.put("A", START, END, [])
        cache.put("B", START, END, [])
        cache.put("C", START, END, [])

        assert [k.split("_")[0] for k in cache.keys()] == ["B", "C"]


class TestSeriesCacheLoad:
    """Test read-through loading."""

    @pytest.mark.asyncio
    async def test_load_fetches_once(self, series_cache, series_source):
        first = await series_cache.load("AAPL", START)
        second = await series_cache.load("AAPL", START)

        assert first.is_ok
        assert second.is_ok
        assert len(second.value) == 3
        assert len(series_source.calls) == 1

    @pytest.mark.asyncio
    async def test_load_open_end_fetches_until_now(self, series_cache, series_source, clock):
        await series_cache.load("AAPL", START)

        symbol, start, end = series_source.calls[0]
        assert symbol == "AAPL"
        assert start == START
        assert end == clock()

    @pytest.mark.asyncio
    async def test_load_failure(self, series_cache, series_source):
        series_source.fail_with = FetchError("HTTP 500", source="fake_series")

        outcome = await series_cache.load("AAPL", START, END)

        assert outcome.is_failed
        assert outcome.value == []
        assert len(series_cache) == 0

    @pytest.mark.asyncio
    async def test_load_unexpected_source_error(self, series_cache, series_source):
        """Test a non-FetchError from the source still yields FAILED."""
        series_source.fail_with = TypeError("row is not a mapping")

        outcome = await series_cache.load("AAPL", START, END)

        assert outcome.is_failed
        assert "TypeError" in outcome.reason
        assert len(series_cache) == 0

    @pytest.mark.asyncio
    async def test_load_without_source(self, clock):
        cache = SeriesCache(clock=clock)

        outcome = await cache.load("AAPL", START, END)

        assert outcome.is_failed
