"""Integration tests for the portfolio metrics engine.

These tests run the engine against the in-memory database and the fake
market data sources from conftest.
"""
import pytest
import pytest_asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from tradejournal.core.config import QuoteCacheConfig
from tradejournal.core.engine import PortfolioMetricsEngine
from tradejournal.core.exceptions import FetchError
from tradejournal.core.models import OutcomeStatus
from tradejournal.market_data.quote_cache import QuoteCache
from tradejournal.market_data.sources import ScriptQuoteSource
from tradejournal.storage.base import SettingsStore, TradeStore

from conftest import BASE_TIME, closed_trade, open_trade, snapshot

STARTING = Decimal("25000")


@pytest_asyncio.fixture
async def engine(quote_cache, series_cache, test_database, metrics_config, clock):
    """Engine wired to the in-memory database and fake sources."""
    engine = PortfolioMetricsEngine(
        quote_cache=quote_cache,
        series_cache=series_cache,
        trade_store=test_database,
        settings_store=test_database,
        capital_ledger=test_database,
        config=metrics_config,
        clock=clock,
    )
    await engine.initialize()
    yield engine
    await engine.close()


# =============================================================================
# Metrics Computation
# =============================================================================

class TestComputeMetrics:
    """Test one metrics computation over a trade set."""

    @pytest.mark.asyncio
    async def test_single_open_trade(self, engine, sample_open_trade):
        """Test 50 AAPL @ 100 with a quote of 110 on 25000 starting capital."""
        metrics = await engine.compute_metrics([sample_open_trade], starting_capital=STARTING)

        assert metrics.status == OutcomeStatus.OK
        assert metrics.starting_capital == STARTING
        assert metrics.current_capital == Decimal("25500")
        assert metrics.total_unrealized_pnl == Decimal("500")
        assert metrics.open_trades == 1

        trade_metrics = metrics.trades[sample_open_trade.id]
        assert trade_metrics.unrealized_pnl == Decimal("500")
        assert trade_metrics.risk_reward_ratio == Decimal("1")
        assert float(trade_metrics.portfolio_weight) == pytest.approx(21.57, abs=0.01)

        assert metrics.capital_snapshot.capital == Decimal("25500")
        assert metrics.computed_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_mixed_book(self, engine, sample_open_trade):
        trades = [
            sample_open_trade,
            closed_trade(ticker="MSFT", exit_price="120"),
            closed_trade(ticker="NVDA", exit_price="95", closed_at=BASE_TIME - timedelta(hours=2)),
        ]

        metrics = await engine.compute_metrics(trades, starting_capital=STARTING)

        # 500 unrealized + 200 - 50 realized
        assert metrics.current_capital == Decimal("25650")
        assert metrics.total_realized_pnl == Decimal("150")
        assert metrics.closed_trades == 2
        assert metrics.performance.winning_trades == 1
        assert metrics.streaks.longest_win == 1
        assert metrics.streaks.longest_loss == 1
        assert metrics.exposure.daily_risk > 0

    @pytest.mark.asyncio
    async def test_none_trades_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.compute_metrics(None)

    @pytest.mark.asyncio
    async def test_empty_book(self, engine):
        metrics = await engine.compute_metrics([], starting_capital=STARTING)

        assert metrics.status == OutcomeStatus.OK
        assert metrics.current_capital == STARTING
        assert metrics.trades == {}

    @pytest.mark.asyncio
    async def test_invalid_records_dropped(self, engine, sample_open_trade):
        """Test malformed records are dropped and the result is DEGRADED."""
        records = [
            sample_open_trade,
            {"id": "no-ticker", "ticker": "", "status": "open", "entry_price": "10"},
            {"id": "no-price", "ticker": "MSFT", "status": "open"},
            {"id": "bad-shares", "ticker": "MSFT", "status": "open", "entry_price": "10",
             "total_shares": "5", "remaining_shares": "8"},
            {"id": "raw-ok", "ticker": "msft", "status": "open", "entry_price": "400"},
        ]

        metrics = await engine.compute_metrics(records, starting_capital=STARTING)

        assert metrics.status == OutcomeStatus.DEGRADED
        assert metrics.dropped_trades == 3
        assert set(metrics.trades) == {sample_open_trade.id, "raw-ok"}
        assert any("dropped 3" in w for w in metrics.warnings)

    @pytest.mark.asyncio
    async def test_quote_failure_degrades(self, engine, quote_source, sample_open_trade):
        """Test a failing quote source values open trades at entry."""
        quote_source.fail_with = FetchError("HTTP 503", source="fake_quotes")

        metrics = await engine.compute_metrics([sample_open_trade], starting_capital=STARTING)

        assert metrics.status == OutcomeStatus.DEGRADED
        assert metrics.current_capital == STARTING
        assert metrics.trades[sample_open_trade.id].quote_missing

    @pytest.mark.asyncio
    async def test_malformed_quote_payload_degrades(self, metrics_config, clock, sample_open_trade):
        """Test a malformed quote body degrades the result instead of raising."""
        source = ScriptQuoteSource(url="https://script.test/exec", retry_base_delay=0)
        cache = QuoteCache(
            source,
            clock=clock,
            config=QuoteCacheConfig(ttl_seconds=1800, stale_tolerance_seconds=14400),
        )
        engine = PortfolioMetricsEngine(cache, config=metrics_config, clock=clock)
        post = AsyncMock(return_value={"prices": [["AAPL", 110]]})

        with patch.object(source, "_post_json", post):
            metrics = await engine.compute_metrics([sample_open_trade], starting_capital=STARTING)

        assert metrics.status == OutcomeStatus.DEGRADED
        assert metrics.current_capital == STARTING
        assert metrics.trades[sample_open_trade.id].quote_missing
        assert post.await_count == 1

    @pytest.mark.asyncio
    async def test_ledger_drawdown(self, engine, sample_open_trade):
        """Test the provisional snapshot is folded into the given ledger."""
        ledger = [snapshot("25000", -3), snapshot("20000", -2)]

        metrics = await engine.compute_metrics(
            [sample_open_trade], starting_capital=STARTING, snapshots=ledger
        )

        assert metrics.max_drawdown == Decimal("20")
        assert metrics.max_runup == Decimal("27.5")
        assert metrics.capital_snapshot.id not in {s.id for s in ledger}


# =============================================================================
# Starting Capital
# =============================================================================

class TestStartingCapital:
    """Test the starting capital fallback chain."""

    @pytest.mark.asyncio
    async def test_explicit_wins(self, engine, test_database):
        await test_database.set_starting_cash("user-1", Decimal("50000"))

        assert await engine.resolve_starting_capital(Decimal("10000"), "user-1") == Decimal("10000")

    @pytest.mark.asyncio
    async def test_settings_store(self, engine, test_database):
        await test_database.set_starting_cash("user-1", Decimal("50000"))

        assert await engine.resolve_starting_capital(None, "user-1") == Decimal("50000")

    @pytest.mark.asyncio
    async def test_configured_default(self, engine):
        assert await engine.resolve_starting_capital(None, "user-1") == STARTING

    @pytest.mark.asyncio
    async def test_settings_failure_falls_back(self, quote_cache, metrics_config):
        settings = AsyncMock(spec=SettingsStore)
        settings.get_starting_cash.side_effect = RuntimeError("db down")
        engine = PortfolioMetricsEngine(quote_cache, settings_store=settings, config=metrics_config)

        assert await engine.resolve_starting_capital(None, "user-1") == STARTING


# =============================================================================
# Refresh Cycle
# =============================================================================

class TestRefresh:
    """Test the list, compute and persist cycle."""

    @pytest.mark.asyncio
    async def test_refresh_persists_fields_and_snapshot(self, engine, test_database):
        trade = open_trade(user_id="user-1")
        await test_database.save_trade(trade)
        await test_database.set_starting_cash("user-1", STARTING)

        metrics = await engine.refresh("user-1")

        assert metrics.status == OutcomeStatus.OK
        assert metrics.current_capital == Decimal("25500")

        fields = await test_database.get_trade_fields(trade.id)
        assert fields["last_price"] == Decimal("110")
        assert float(fields["portfolio_weight"]) == pytest.approx(21.57, abs=0.01)

        snapshots = await test_database.list_snapshots("user-1")
        assert len(snapshots) == 1
        assert snapshots[0].capital == Decimal("25500")

    @pytest.mark.asyncio
    async def test_same_day_refresh_updates_snapshot(self, engine, test_database, clock):
        await test_database.save_trade(open_trade(user_id="user-1"))

        await engine.refresh("user-1")
        clock.advance(hours=1)
        await engine.refresh("user-1")

        snapshots = await test_database.list_snapshots("user-1")
        assert len(snapshots) == 1
        assert snapshots[0].timestamp == BASE_TIME + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_refresh_clears_closed_symbols(self, engine, test_database, quote_cache):
        closed = closed_trade(ticker="MSFT")
        closed.user_id = "user-1"
        await test_database.save_trade(closed)
        await quote_cache.get_quotes(["MSFT"])

        await engine.refresh("user-1")

        assert "MSFT" not in quote_cache

    @pytest.mark.asyncio
    async def test_trade_store_failure(self, quote_cache, metrics_config):
        """Test an unreachable trade store yields a FAILED result."""
        store = AsyncMock(spec=TradeStore)
        store.list_trades.side_effect = RuntimeError("connection refused")
        engine = PortfolioMetricsEngine(quote_cache, trade_store=store, config=metrics_config)

        metrics = await engine.refresh("user-1")

        assert metrics.status == OutcomeStatus.FAILED
        assert metrics.current_capital == STARTING

    @pytest.mark.asyncio
    async def test_update_failures_counted(self, engine, sample_open_trade):
        """Test trades missing from the store are skipped when persisting."""
        metrics = await engine.compute_metrics([sample_open_trade], starting_capital=STARTING)

        assert await engine.persist_trade_metrics(metrics) == 0


# =============================================================================
# Excursions
# =============================================================================

class TestTradeExcursion:
    """Test MAE/MFE loading through the series cache."""

    @pytest.mark.asyncio
    async def test_excursion(self, engine, series_source, sample_open_trade):
        outcome = await engine.trade_excursion(sample_open_trade)

        assert outcome.is_ok
        assert outcome.value.mae_percentage == Decimal("5")
        assert outcome.value.mfe_percentage == Decimal("12")
        assert len(series_source.calls) == 1

    @pytest.mark.asyncio
    async def test_excursion_without_series_cache(self, quote_cache, sample_open_trade):
        engine = PortfolioMetricsEngine(quote_cache)

        outcome = await engine.trade_excursion(sample_open_trade)

        assert outcome.is_failed
