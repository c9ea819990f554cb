"""
Capital and drawdown tracking.

Current capital is starting capital plus realized and unrealized PnL.
Drawdown and run-up are a left fold over the time-ordered capital ledger:

    high-water mark starts below any value
    for each snapshot:
        if day_high sets a new high-water mark:
            run-up = (day_high - previous capital) / previous capital * 100
        drawdown = (high-water mark - day_low) / high-water mark * 100

Both are tracked as running maxima. The ledger is assumed already ordered;
the fold never re-sorts or looks back.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Literal, Optional
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd
import structlog

from tradejournal.core.config import metrics_config
from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import (CapitalSnapshot, DrawdownRunup,
                                      EquityPoint, Quote, RiskAdjustedReturns,
                                      Trade, utc_now)

logger = structlog.get_logger(__name__)

HUNDRED = Decimal("100")

RESAMPLE_RULES = {
    "daily": "D",
    "weekly": "W",
    "monthly": "ME",
}


# =============================================================================
# Current Capital
# =============================================================================

def total_realized_pnl(trades: Iterable[Trade]) -> Decimal:
    """Realized PnL over all trades, including partial exits of open ones."""
    return sum((t.realized_pnl for t in trades), Decimal("0"))


def total_unrealized_pnl(
    trades: Iterable[Trade], quotes: Optional[Dict[str, Quote]] = None
) -> Decimal:
    """Unrealized PnL of open trades.

    With ``quotes``, open trades are marked at their quote, or at entry
    (zero unrealized) when their symbol has none. Without ``quotes`` the
    recorded ``unrealized_pnl`` is used.
    """
    total = Decimal("0")
    for trade in trades:
        if not trade.is_open:
            continue
        if quotes is None:
            total += trade.unrealized_pnl
            continue
        quote = quotes.get(trade.ticker)
        if quote is not None:
            total += trade.mark_to_market(quote.price)
    return total


def current_capital(
    starting_capital: Decimal,
    trades: Iterable[Trade],
    quotes: Optional[Dict[str, Quote]] = None,
) -> Decimal:
    """Starting capital plus realized and unrealized PnL."""
    trades = list(trades)
    return (
        starting_capital
        + total_realized_pnl(trades)
        + total_unrealized_pnl(trades, quotes)
    )


# =============================================================================
# Drawdown & Run-up
# =============================================================================

class DrawdownTracker:
    """Streaming drawdown/run-up fold over capital snapshots."""

    def __init__(self):
        self.high_water_mark: Optional[Decimal] = None
        self.previous_value: Optional[Decimal] = None
        self.current_drawdown = Decimal("0")
        self.max_drawdown = Decimal("0")
        self.max_runup = Decimal("0")

    def update(self, snapshot: CapitalSnapshot) -> None:
        """Fold in the next snapshot in time order."""
        high = snapshot.high
        low = snapshot.low

        if self.high_water_mark is None or high > self.high_water_mark:
            if self.previous_value is not None and self.previous_value != 0:
                runup = (high - self.previous_value) / self.previous_value * HUNDRED
                self.max_runup = max(self.max_runup, runup)
            self.high_water_mark = high

        self.current_drawdown = max(
            Decimal("0"),
            safe_divide(self.high_water_mark - low, self.high_water_mark) * HUNDRED,
        )
        self.max_drawdown = max(self.max_drawdown, self.current_drawdown)
        self.previous_value = snapshot.capital

    @property
    def result(self) -> DrawdownRunup:
        return DrawdownRunup(
            max_drawdown=self.max_drawdown,
            max_runup=self.max_runup,
            current_drawdown=self.current_drawdown,
            high_water_mark=self.high_water_mark,
        )


def drawdown_and_runup(snapshots: Iterable[CapitalSnapshot]) -> DrawdownRunup:
    """Max drawdown and max run-up of a time-ordered snapshot sequence."""
    tracker = DrawdownTracker()
    for snapshot in snapshots:
        tracker.update(snapshot)
    return tracker.result


# =============================================================================
# Snapshots
# =============================================================================

def _same_trading_day(a: datetime, b: datetime, tz: ZoneInfo) -> bool:
    return a.astimezone(tz).date() == b.astimezone(tz).date()


def build_snapshot(
    previous: Optional[CapitalSnapshot],
    capital: Decimal,
    realized_pnl: Decimal = Decimal("0"),
    unrealized_pnl: Decimal = Decimal("0"),
    trade_count: int = 0,
    user_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    end_of_day: bool = False,
    timezone: Optional[str] = None,
) -> CapitalSnapshot:
    """Next ledger snapshot after ``previous``.

    A ``previous`` snapshot from the same trading day that is not yet
    finalized is replaced: the returned copy keeps its id and widens its
    day high/low. Otherwise a new snapshot is started. The high-water mark
    and max drawdown/run-up are carried forward either way.
    """
    timestamp = timestamp or utc_now()
    tz = ZoneInfo(timezone or metrics_config.timezone)

    if previous is None:
        high_water_mark = capital
        max_runup = Decimal("0")
        max_drawdown = Decimal("0")
    else:
        high_water_mark = max(previous.high_water_mark, capital)
        max_runup = previous.max_runup
        max_drawdown = previous.max_drawdown
        if capital > previous.high_water_mark and previous.capital != 0:
            runup = (capital - previous.capital) / previous.capital * HUNDRED
            max_runup = max(max_runup, runup)

    current_drawdown = max(
        Decimal("0"), safe_divide(high_water_mark - capital, high_water_mark) * HUNDRED
    )
    fields = {
        "timestamp": timestamp,
        "capital": capital,
        "high_water_mark": high_water_mark,
        "current_drawdown": current_drawdown,
        "max_drawdown": max(max_drawdown, current_drawdown),
        "max_runup": max_runup,
        "realized_pnl": realized_pnl,
        "unrealized_pnl": unrealized_pnl,
        "trade_count": trade_count,
        "is_end_of_day": end_of_day,
    }

    if (
        previous is not None
        and not previous.is_end_of_day
        and _same_trading_day(previous.timestamp, timestamp, tz)
    ):
        fields["day_high"] = max(previous.high, capital)
        fields["day_low"] = min(previous.low, capital)
        return previous.model_copy(update=fields)

    return CapitalSnapshot(
        user_id=user_id,
        day_high=capital,
        day_low=capital,
        **fields
    )


# =============================================================================
# Equity Curve & Returns
# =============================================================================

def snapshots_frame(
    snapshots: Iterable[CapitalSnapshot], timezone: Optional[str] = None
) -> pd.DataFrame:
    """Snapshots as a DataFrame indexed by journal-local timestamp with a float capital column.

    The index is converted to the journal timezone so resampling groups
    snapshots by trading day rather than by UTC day.
    """
    tz = timezone or metrics_config.timezone
    records = [
        {"timestamp": s.timestamp, "capital": float(s.capital)} for s in snapshots
    ]
    if not records:
        return pd.DataFrame(columns=["capital"], index=pd.DatetimeIndex([], tz=tz))
    frame = pd.DataFrame(records)
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True).dt.tz_convert(tz)
    return frame.set_index("timestamp").sort_index()


def equity_curve(
    snapshots: Iterable[CapitalSnapshot],
    interval: Literal["daily", "weekly", "monthly"] = "daily",
    timezone: Optional[str] = None,
) -> List[EquityPoint]:
    """Closing capital per trading day, week or month in the journal timezone."""
    if interval not in RESAMPLE_RULES:
        raise ValueError(f"Unknown interval: {interval}")

    frame = snapshots_frame(snapshots, timezone)
    if frame.empty:
        return []

    closes = frame["capital"].resample(RESAMPLE_RULES[interval]).last().dropna()
    return [
        EquityPoint(timestamp=ts.to_pydatetime(), capital=Decimal(str(value)))
        for ts, value in closes.items()
    ]


def risk_adjusted_returns(
    snapshots: Iterable[CapitalSnapshot],
    trading_days: Optional[int] = None,
    timezone: Optional[str] = None,
) -> RiskAdjustedReturns:
    """Sharpe, Sortino and annualized volatility of daily closing capital.

    Risk-free rate is taken as 0. Ratios with no dispersion resolve to 0.
    """
    trading_days = trading_days or metrics_config.trading_days_per_year
    frame = snapshots_frame(snapshots, timezone)
    if frame.empty:
        return RiskAdjustedReturns()

    daily = frame["capital"].resample("D").last().dropna()
    returns = daily.pct_change().replace([np.inf, -np.inf], np.nan).dropna()
    if len(returns) < 2:
        return RiskAdjustedReturns(observations=len(returns))

    returns_mean = returns.mean() * trading_days
    returns_std = returns.std() * np.sqrt(trading_days)
    sharpe = returns_mean / returns_std if returns_std > 0 else 0.0

    downside_returns = returns[returns < 0]
    downside_std = downside_returns.std() * np.sqrt(trading_days)
    sortino = returns_mean / downside_std if downside_std > 0 else 0.0

    return RiskAdjustedReturns(
        sharpe_ratio=float(sharpe),
        sortino_ratio=float(sortino),
        volatility=float(returns_std * 100),
        observations=len(returns),
    )
