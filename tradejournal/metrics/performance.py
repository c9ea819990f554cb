"""Performance aggregates over closed trades."""
from decimal import Decimal
from typing import Iterable, List

from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import PerformanceMetrics, Trade
from tradejournal.metrics.risk import risk_reward_ratio
from tradejournal.metrics.streaks import streaks

HUNDRED = Decimal("100")


def _mean(values: List[Decimal]) -> Decimal:
    return safe_divide(sum(values, Decimal("0")), len(values))


def _pnl_percentage(trade: Trade) -> Decimal:
    return safe_divide(trade.realized_pnl, trade.cost_basis) * HUNDRED


def performance_metrics(trades: Iterable[Trade]) -> PerformanceMetrics:
    """Win rate, averages, profit factor, expectancy and streaks.

    Only closed trades count. A trade with zero realized PnL is break-even:
    it counts towards the total but neither wins nor losses. Averages of
    losses are reported as positive numbers. Ratios with a zero denominator
    resolve to 0.
    """
    closed = [t for t in trades if t.is_closed]
    if not closed:
        return PerformanceMetrics()

    winners = [t for t in closed if t.realized_pnl > 0]
    losers = [t for t in closed if t.realized_pnl < 0]

    total_profits = sum((t.realized_pnl for t in winners), Decimal("0"))
    total_losses = abs(sum((t.realized_pnl for t in losers), Decimal("0")))

    win_fraction = safe_divide(len(winners), len(closed))
    avg_win = safe_divide(total_profits, len(winners))
    avg_loss = safe_divide(total_losses, len(losers))

    ratios = [risk_reward_ratio(t) for t in closed]

    return PerformanceMetrics(
        total_trades=len(closed),
        winning_trades=len(winners),
        losing_trades=len(losers),
        break_even_trades=len(closed) - len(winners) - len(losers),
        win_rate=win_fraction * HUNDRED,
        avg_win=avg_win,
        avg_loss=avg_loss,
        profit_factor=safe_divide(total_profits, total_losses),
        payoff_ratio=safe_divide(avg_win, avg_loss),
        expectancy=win_fraction * avg_win - (1 - win_fraction) * avg_loss,
        largest_win=max((t.realized_pnl for t in winners), default=Decimal("0")),
        largest_loss=min((t.realized_pnl for t in losers), default=Decimal("0")),
        avg_win_r=_mean([risk_reward_ratio(t) for t in winners]),
        avg_loss_r=abs(_mean([risk_reward_ratio(t) for t in losers])),
        avg_risk_reward=_mean(ratios),
        avg_gain_percentage=_mean([_pnl_percentage(t) for t in winners]),
        avg_loss_percentage=abs(_mean([_pnl_percentage(t) for t in losers])),
        streaks=streaks(closed),
    )
