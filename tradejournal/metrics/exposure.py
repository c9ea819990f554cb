"""Exposure aggregation over open trades.

Three buckets of OPEN trades, each with a risk and a profit component as a
% of current capital:

- daily: opened today (in the journal timezone)
- new: opened within the trailing window (7 days by default)
- open: every open trade; its profit includes realized PnL from partial exits

Delta = profit - risk; a positive delta means the bucket's open exposure is,
in aggregate, net favorable.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from tradejournal.core.config import metrics_config
from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import ExposureMetrics, Trade, utc_now
from tradejournal.metrics.risk import initial_position_risk

HUNDRED = Decimal("100")


def _bucket_totals(
    trades: List[Trade], current_capital: Decimal, include_realized: bool
) -> tuple:
    risk = sum(
        (initial_position_risk(t, current_capital) for t in trades), Decimal("0")
    )
    pnl = sum(
        (t.unrealized_pnl + (t.realized_pnl if include_realized else 0) for t in trades),
        Decimal("0"),
    )
    profit = safe_divide(pnl, current_capital) * HUNDRED
    return risk, profit


def exposure(
    trades: Iterable[Trade],
    current_capital: Decimal,
    now: Optional[datetime] = None,
    timezone: Optional[str] = None,
    new_days: Optional[int] = None,
) -> ExposureMetrics:
    """Daily, new and open exposure of the open trades in ``trades``.

    Unrealized PnL is read from the trade records, so pass trades carrying
    current valuations.

    Args:
        trades: Trades to aggregate (closed ones are ignored)
        current_capital: Denominator for the profit percentages
        now: Reference time (defaults to now)
        timezone: Journal timezone deciding "today"
        new_days: Length of the trailing "new" window in days

    Returns:
        ExposureMetrics with risk, profit and delta per bucket
    """
    now = now or utc_now()
    tz = ZoneInfo(timezone or metrics_config.timezone)
    window = timedelta(
        days=new_days if new_days is not None else metrics_config.new_exposure_days
    )

    today = now.astimezone(tz).date()
    window_start = now - window

    open_trades = [t for t in trades if t.is_open]
    daily = [
        t for t in open_trades
        if t.entry_datetime is not None and t.entry_datetime.astimezone(tz).date() == today
    ]
    new = [
        t for t in open_trades
        if t.entry_datetime is not None and t.entry_datetime >= window_start
    ]

    daily_risk, daily_profit = _bucket_totals(daily, current_capital, include_realized=False)
    new_risk, new_profit = _bucket_totals(new, current_capital, include_realized=False)
    open_risk, open_profit = _bucket_totals(open_trades, current_capital, include_realized=True)

    return ExposureMetrics(
        daily_risk=daily_risk,
        daily_profit=daily_profit,
        daily_delta=daily_profit - daily_risk,
        new_risk=new_risk,
        new_profit=new_profit,
        new_delta=new_profit - new_risk,
        open_risk=open_risk,
        open_profit=open_profit,
        open_delta=open_profit - open_risk,
    )
