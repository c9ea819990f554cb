"""Portfolio metrics engine - composes caches, calculators and stores."""
from datetime import datetime
from decimal import Decimal
from typing import (Any, Callable, Dict, Iterable, List, Mapping, Optional,
                    Tuple, Union)

import structlog
from pydantic import ValidationError as PydanticValidationError

from tradejournal.core.config import MetricsConfig, metrics_config
from tradejournal.core.exceptions import ValidationError
from tradejournal.core.models import (CapitalSnapshot, ExcursionMetrics,
                                      Outcome, OutcomeStatus, PortfolioMetrics,
                                      Quote, Trade, TradeMetrics, utc_now)
from tradejournal.market_data.quote_cache import QuoteCache
from tradejournal.market_data.series_cache import SeriesCache
from tradejournal.metrics.capital import (build_snapshot, current_capital,
                                          drawdown_and_runup,
                                          risk_adjusted_returns,
                                          total_realized_pnl)
from tradejournal.metrics.excursion import trade_excursions
from tradejournal.metrics.exposure import exposure
from tradejournal.metrics.performance import performance_metrics
from tradejournal.metrics.valuation import valuate
from tradejournal.storage.base import CapitalLedger, SettingsStore, TradeStore

logger = structlog.get_logger(__name__)

TradeRecord = Union[Trade, Mapping[str, Any]]

REQUIRED_TRADE_FIELDS = ("ticker", "status", "entry_price")


class PortfolioMetricsEngine:
    """
    Computes one consistent PortfolioMetrics view of a trade set.

    Responsibilities:
    - Drops malformed trade records before any calculation
    - Resolves starting capital (argument, settings store, configured default)
    - Takes one quote snapshot per computation for all open symbols
    - Runs valuation, performance, exposure, streaks and drawdown/run-up
    - Optionally persists recomputed trade fields and the capital snapshot

    Missing or stale market data degrades the result instead of failing it.
    Only programmer errors (such as a None trade list) raise.
    """

    def __init__(
        self,
        quote_cache: QuoteCache,
        series_cache: Optional[SeriesCache] = None,
        trade_store: Optional[TradeStore] = None,
        settings_store: Optional[SettingsStore] = None,
        capital_ledger: Optional[CapitalLedger] = None,
        config: Optional[MetricsConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.quote_cache = quote_cache
        self.series_cache = series_cache
        self.trade_store = trade_store
        self.settings_store = settings_store
        self.capital_ledger = capital_ledger
        self.config = config or metrics_config
        self._clock = clock or utc_now

    async def initialize(self):
        """Initialize the caches and their sources."""
        await self.quote_cache.initialize()
        if self.series_cache is not None:
            await self.series_cache.initialize()
        logger.info("engine.initialized")

    async def close(self):
        """Close the caches and their sources."""
        await self.quote_cache.close()
        if self.series_cache is not None:
            await self.series_cache.close()
        logger.info("engine.closed")

    # =========================================================================
    # Metrics
    # =========================================================================

    async def compute_metrics(
        self,
        trades: Iterable[TradeRecord],
        starting_capital: Optional[Decimal] = None,
        user_id: Optional[str] = None,
        snapshots: Optional[List[CapitalSnapshot]] = None,
    ) -> PortfolioMetrics:
        """Compute portfolio metrics for a trade set.

        Args:
            trades: Trade records (Trade objects or raw mappings)
            starting_capital: Explicit starting capital
            user_id: Owner, used for settings and ledger lookups
            snapshots: Time-ordered capital ledger; read from the ledger
                store when omitted

        Returns:
            PortfolioMetrics, DEGRADED when records were dropped or quotes
            were stale or missing

        Raises:
            ValueError: If ``trades`` is None
        """
        if trades is None:
            raise ValueError("trades must not be None")

        now = self._clock()
        warnings: List[str] = []

        valid, dropped = self.validate_trades(trades)
        if dropped:
            warnings.append(f"dropped {dropped} invalid trade record(s)")

        starting = await self.resolve_starting_capital(starting_capital, user_id)

        quotes = await self._quote_snapshot(valid, warnings)

        capital_now = current_capital(starting, valid, quotes)

        valuations = {
            trade.id: valuate(trade, quotes.get(trade.ticker), starting, capital_now)
            for trade in valid
        }
        valued = [self._with_valuation(trade, valuations[trade.id]) for trade in valid]

        performance = performance_metrics(valued)

        exposure_metrics = exposure(
            valued,
            capital_now,
            now=now,
            timezone=self.config.timezone,
            new_days=self.config.new_exposure_days,
        )

        realized = total_realized_pnl(valued)
        unrealized = capital_now - starting - realized

        ledger = snapshots if snapshots is not None else await self._load_snapshots(user_id)
        snapshot = build_snapshot(
            ledger[-1] if ledger else None,
            capital_now,
            realized_pnl=realized,
            unrealized_pnl=unrealized,
            trade_count=len(valid),
            user_id=user_id,
            timestamp=now,
            timezone=self.config.timezone,
        )
        series = list(ledger)
        if series and series[-1].id == snapshot.id:
            series[-1] = snapshot
        else:
            series.append(snapshot)

        metrics = PortfolioMetrics(
            user_id=user_id,
            computed_at=now,
            starting_capital=starting,
            current_capital=capital_now,
            total_realized_pnl=realized,
            total_unrealized_pnl=unrealized,
            open_trades=sum(1 for t in valid if t.is_open),
            closed_trades=sum(1 for t in valid if t.is_closed),
            dropped_trades=dropped,
            trades=valuations,
            performance=performance,
            exposure=exposure_metrics,
            drawdown=drawdown_and_runup(series),
            risk_adjusted=risk_adjusted_returns(
                series, self.config.trading_days_per_year, timezone=self.config.timezone
            ),
            capital_snapshot=snapshot,
            status=OutcomeStatus.DEGRADED if warnings else OutcomeStatus.OK,
            warnings=warnings,
        )

        logger.info(
            "engine.metrics_computed",
            user_id=user_id,
            trades=len(valid),
            dropped=dropped,
            current_capital=str(capital_now),
            status=metrics.status.value,
        )
        return metrics

    def validate_trades(self, records: Iterable[TradeRecord]) -> Tuple[List[Trade], int]:
        """Split records into valid trades and a count of dropped ones."""
        valid: List[Trade] = []
        dropped = 0
        for record in records:
            try:
                valid.append(self._coerce_trade(record))
            except ValidationError as e:
                dropped += 1
                logger.warning("engine.trade_dropped", trade_id=e.trade_id, error=str(e))
        return valid, dropped

    def _coerce_trade(self, record: TradeRecord) -> Trade:
        if isinstance(record, Trade):
            missing = [f for f in REQUIRED_TRADE_FIELDS if not getattr(record, f, None)]
            # A zero entry price is valid, only an absent one is not
            if "entry_price" in missing and getattr(record, "entry_price", None) is not None:
                missing.remove("entry_price")
            if missing:
                raise ValidationError(f"missing {', '.join(missing)}", trade_id=record.id)
            return record

        if not isinstance(record, Mapping):
            raise ValidationError(f"unsupported trade record: {type(record).__name__}")

        trade_id = record.get("id")
        missing = [f for f in REQUIRED_TRADE_FIELDS if record.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"missing {', '.join(missing)}", trade_id=trade_id)

        try:
            return Trade.model_validate(dict(record))
        except PydanticValidationError as e:
            raise ValidationError(str(e), trade_id=trade_id) from e

    async def resolve_starting_capital(
        self, starting_capital: Optional[Decimal] = None, user_id: Optional[str] = None
    ) -> Decimal:
        """Explicit argument, else the user's setting, else the configured default."""
        if starting_capital is not None:
            return Decimal(str(starting_capital))

        if self.settings_store is not None and user_id is not None:
            try:
                stored = await self.settings_store.get_starting_cash(user_id)
            except Exception as e:
                logger.warning("engine.settings_unavailable", user_id=user_id, error=str(e))
            else:
                if stored is not None and stored > 0:
                    return Decimal(str(stored))

        return self.config.default_starting_capital

    async def _quote_snapshot(
        self, trades: List[Trade], warnings: List[str]
    ) -> Dict[str, Quote]:
        symbols = {t.ticker for t in trades if t.is_open}
        if not symbols:
            return {}

        outcome = await self.quote_cache.get_quotes(symbols)
        if not outcome.is_ok:
            warnings.append(outcome.reason)
            logger.warning(
                "engine.quotes_degraded", status=outcome.status.value, reason=outcome.reason
            )
        # Copy so later cache refreshes cannot leak into this computation
        return dict(outcome.value or {})

    @staticmethod
    def _with_valuation(trade: Trade, metrics: TradeMetrics) -> Trade:
        """Copy of the trade carrying its current valuation."""
        return trade.model_copy(update={
            "unrealized_pnl": metrics.unrealized_pnl,
            "initial_position_risk": metrics.initial_position_risk,
        })

    async def _load_snapshots(self, user_id: Optional[str]) -> List[CapitalSnapshot]:
        if self.capital_ledger is None or user_id is None:
            return []
        try:
            return await self.capital_ledger.list_snapshots(user_id)
        except Exception as e:
            logger.warning("engine.ledger_unavailable", user_id=user_id, error=str(e))
            return []

    # =========================================================================
    # Excursions
    # =========================================================================

    async def trade_excursion(self, trade: Trade) -> Outcome[ExcursionMetrics]:
        """MAE/MFE of a trade over its history, loaded through the series cache."""
        if self.series_cache is None:
            return Outcome.failed("no series cache configured")
        if trade.entry_datetime is None:
            return Outcome.failed(f"{trade.ticker}: no entry time")

        end = trade.exit_datetime if trade.is_closed else None
        series = await self.series_cache.load(trade.ticker, trade.entry_datetime, end)
        if series.is_failed:
            return Outcome.failed(series.reason)
        return Outcome.ok(trade_excursions(trade, series.value))

    # =========================================================================
    # Refresh Cycle
    # =========================================================================

    async def refresh(
        self, user_id: str, starting_capital: Optional[Decimal] = None
    ) -> PortfolioMetrics:
        """List a user's trades, compute metrics and persist the results.

        Persists recomputed trade fields and the capital snapshot. Store
        failures are logged, never raised. If the trades cannot be listed
        the result is FAILED.
        """
        if self.trade_store is None:
            raise ValueError("refresh requires a trade store")

        with structlog.contextvars.bound_contextvars(user_id=user_id):
            return await self._refresh(user_id, starting_capital)

    async def _refresh(
        self, user_id: str, starting_capital: Optional[Decimal]
    ) -> PortfolioMetrics:
        try:
            trades = await self.trade_store.list_trades(user_id)
        except Exception as e:
            logger.error("engine.trades_unavailable", user_id=user_id, error=str(e))
            starting = await self.resolve_starting_capital(starting_capital, user_id)
            return PortfolioMetrics(
                user_id=user_id,
                starting_capital=starting,
                current_capital=starting,
                status=OutcomeStatus.FAILED,
                warnings=[f"trade store unavailable: {e}"],
            )

        metrics = await self.compute_metrics(trades, starting_capital, user_id=user_id)

        await self.persist_trade_metrics(metrics)
        await self.record_snapshot(metrics)

        open_tickers = {t.ticker for t in trades if t.is_open}
        closed_tickers = {t.ticker for t in trades if t.is_closed} - open_tickers
        self.quote_cache.clear_symbols(closed_tickers)

        return metrics

    async def persist_trade_metrics(self, metrics: PortfolioMetrics) -> int:
        """Write recomputed fields back to the trade store.

        Returns:
            Number of trades updated
        """
        if self.trade_store is None:
            return 0

        updated = 0
        for trade_id, trade_metrics in metrics.trades.items():
            try:
                await self.trade_store.update_trade(trade_id, trade_metrics.to_trade_fields())
            except Exception as e:
                logger.warning("engine.trade_update_failed", trade_id=trade_id, error=str(e))
                continue
            updated += 1
        return updated

    async def record_snapshot(self, metrics: PortfolioMetrics) -> bool:
        """Append the computation's capital snapshot to the ledger."""
        if self.capital_ledger is None or metrics.capital_snapshot is None:
            return False
        try:
            await self.capital_ledger.append_snapshot(metrics.capital_snapshot)
        except Exception as e:
            logger.warning("engine.snapshot_write_failed", user_id=metrics.user_id, error=str(e))
            return False
        return True
