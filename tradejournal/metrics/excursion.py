"""Maximum adverse and favorable excursion (MAE / MFE).

Measured from the lowest low and highest high of a trade's OHLCV history
relative to its entry price. Excursions that never went against (or for)
the position are 0. R values divide the excursion per share by the stop
distance per share.
"""
from decimal import Decimal
from typing import List

from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import Candle, ExcursionMetrics, Trade, TradeDirection
from tradejournal.metrics.risk import risk_per_share

HUNDRED = Decimal("100")


def _stop_distance(trade: Trade) -> Decimal:
    if trade.stop_loss_price is not None:
        return abs(trade.entry_price - trade.stop_loss_price)
    return risk_per_share(trade)


def trade_excursions(trade: Trade, candles: List[Candle]) -> ExcursionMetrics:
    """MAE/MFE of ``trade`` over ``candles`` in %, dollars and R."""
    if not candles:
        return ExcursionMetrics(trade_id=trade.id)

    entry = trade.entry_price
    min_price = min(c.low for c in candles)
    max_price = max(c.high for c in candles)

    if trade.direction == TradeDirection.LONG:
        adverse = max(Decimal("0"), entry - min_price)
        favorable = max(Decimal("0"), max_price - entry)
    else:
        adverse = max(Decimal("0"), max_price - entry)
        favorable = max(Decimal("0"), entry - min_price)

    stop_distance = _stop_distance(trade)

    return ExcursionMetrics(
        trade_id=trade.id,
        mae_percentage=safe_divide(adverse, entry) * HUNDRED,
        mfe_percentage=safe_divide(favorable, entry) * HUNDRED,
        mae_amount=adverse * trade.total_shares,
        mfe_amount=favorable * trade.total_shares,
        mae_r=safe_divide(adverse, stop_distance),
        mfe_r=safe_divide(favorable, stop_distance),
        candle_count=len(candles),
    )
