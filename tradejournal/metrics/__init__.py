"""Metrics module for the trade journal.

Pure calculators over trade records and the capital ledger:
- Trade valuation against a quote snapshot
- Risk-reward ratio, current risk and tiered stops
- Win/loss streaks and performance aggregates
- Daily/new/open exposure
- Current capital, drawdown/run-up, equity curve and risk-adjusted returns
- MAE/MFE from OHLCV history
"""

from tradejournal.metrics.risk import (
    current_risk_amount,
    initial_position_risk,
    r_targets,
    risk_reward_ratio,
    tiered_open_risk,
)
from tradejournal.metrics.valuation import valuate
from tradejournal.metrics.streaks import streaks
from tradejournal.metrics.exposure import exposure
from tradejournal.metrics.capital import (
    DrawdownTracker,
    build_snapshot,
    current_capital,
    drawdown_and_runup,
    equity_curve,
    risk_adjusted_returns,
)
from tradejournal.metrics.performance import performance_metrics
from tradejournal.metrics.excursion import trade_excursions

__all__ = [
    'valuate',
    'risk_reward_ratio',
    'current_risk_amount',
    'initial_position_risk',
    'tiered_open_risk',
    'r_targets',
    'streaks',
    'exposure',
    'current_capital',
    'drawdown_and_runup',
    'DrawdownTracker',
    'build_snapshot',
    'equity_curve',
    'risk_adjusted_returns',
    'performance_metrics',
    'trade_excursions',
]
