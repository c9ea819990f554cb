"""Win/loss streaks over closed trades."""
from datetime import datetime, timezone
from typing import Iterable, List

from tradejournal.core.models import StreakMetrics, Trade

_NO_EXIT = datetime.min.replace(tzinfo=timezone.utc)


def is_win(trade: Trade) -> bool:
    """A closed trade is a win iff its realized PnL is positive."""
    return trade.realized_pnl > 0


def order_most_recent_first(trades: Iterable[Trade]) -> List[Trade]:
    """Closed trades sorted by exit time, most recent first.

    The sort is stable; trades without an exit time go last.
    """
    closed = [t for t in trades if t.is_closed]
    return sorted(closed, key=lambda t: t.exit_datetime or _NO_EXIT, reverse=True)


def streaks(closed_trades: Iterable[Trade]) -> StreakMetrics:
    """Current and longest streaks.

    Walks closed trades from the most recent exit backwards with a signed
    counter: +1 per win, -1 per loss. When the outcome flips, the finished
    run's length is committed to ``longest_win``/``longest_loss`` and the
    counter restarts at +1 or -1. ``current`` is the signed counter the walk
    ends on.
    """
    ordered = order_most_recent_first(closed_trades)
    if not ordered:
        return StreakMetrics()

    counter = 0
    longest_win = 0
    longest_loss = 0

    for trade in ordered:
        step = 1 if is_win(trade) else -1
        if counter == 0 or (counter > 0) == (step > 0):
            counter += step
            continue

        if counter > 0:
            longest_win = max(longest_win, counter)
        else:
            longest_loss = max(longest_loss, -counter)
        counter = step

    if counter > 0:
        longest_win = max(longest_win, counter)
    else:
        longest_loss = max(longest_loss, -counter)

    return StreakMetrics(current=counter, longest_win=longest_win, longest_loss=longest_loss)
