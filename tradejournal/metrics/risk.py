"""Risk and reward calculations for single trades.

Stop distances use the fractional convention: ``open_risk`` is
``|entry - stop| / entry``, so the dollar risk per share is
``entry_price * open_risk``.
"""
from decimal import Decimal
from typing import Dict, Optional

from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import Trade, TradeDirection

# Share of the position exited at each stop tier (full, 33%, 66%)
TIER_WEIGHTS = (Decimal("0.5"), Decimal("0.33"), Decimal("0.17"))


def risk_per_share(trade: Trade) -> Decimal:
    """Dollar risk per share from the fractional stop distance."""
    if trade.open_risk is None or not trade.entry_price:
        return Decimal("0")
    return trade.entry_price * trade.open_risk


def total_risk(trade: Trade) -> Decimal:
    """Dollar risk of the full position."""
    return risk_per_share(trade) * trade.total_shares


def risk_reward_ratio(trade: Trade, unrealized_pnl: Optional[Decimal] = None) -> Decimal:
    """PnL as a multiple of the dollar amount initially at risk.

    Closed trades use realized PnL; open trades add unrealized PnL, taken
    from ``unrealized_pnl`` when given and from the trade record otherwise.
    Returns 0 when there is no finite risk (missing open_risk, zero entry,
    zero shares or zero stop distance).
    """
    risk = total_risk(trade)
    if risk == 0:
        return Decimal("0")

    reward = trade.realized_pnl
    if not trade.is_closed:
        reward += trade.unrealized_pnl if unrealized_pnl is None else unrealized_pnl

    return safe_divide(reward, risk)


def original_stop(trade: Trade) -> Optional[Decimal]:
    """Stop price implied by open_risk, falling back to the recorded stop."""
    if trade.open_risk is None:
        return trade.stop_loss_price
    if trade.direction == TradeDirection.LONG:
        return trade.entry_price * (1 - trade.open_risk)
    return trade.entry_price * (1 + trade.open_risk)


def current_risk_amount(trade: Trade, price: Optional[Decimal] = None) -> Decimal:
    """Dollars lost if the active stop is hit from ``price``.

    The trailing stop wins over the original stop. Long risk is price above
    the stop, short risk is stop above price. ``price`` defaults to the
    entry price.
    """
    if trade.is_closed or trade.remaining_shares == 0:
        return Decimal("0")

    stop = trade.trailing_stop if trade.trailing_stop is not None else original_stop(trade)
    if stop is None:
        return Decimal("0")

    price = trade.entry_price if price is None else price
    if trade.direction == TradeDirection.LONG:
        return (price - stop) * trade.remaining_shares
    return (stop - price) * trade.remaining_shares


def initial_position_risk(trade: Trade, capital: Decimal) -> Decimal:
    """Initial risk as a % of capital.

    The value recorded on the trade (capital at entry) wins; otherwise the
    initial risk amount is related to ``capital``.
    """
    if trade.initial_position_risk is not None:
        return trade.initial_position_risk
    if trade.initial_risk_amount is None:
        return Decimal("0")
    return safe_divide(trade.initial_risk_amount, capital) * 100


# =============================================================================
# Tiered Stops
# =============================================================================

def tiered_open_risk(
    entry_price: Decimal,
    stop_loss: Decimal,
    stop_loss_33: Optional[Decimal] = None,
    stop_loss_66: Optional[Decimal] = None,
) -> Decimal:
    """Weighted fractional risk of a position scaled out over three stops.

    Half the position exits at the full stop, a third at the 33% stop and
    the rest at the 66% stop. Missing tiers fall back to the full stop.
    """
    stops = (
        stop_loss,
        stop_loss if stop_loss_33 is None else stop_loss_33,
        stop_loss if stop_loss_66 is None else stop_loss_66,
    )
    return sum(
        (weight * safe_divide(abs(entry_price - stop), entry_price)
         for weight, stop in zip(TIER_WEIGHTS, stops)),
        Decimal("0"),
    )


def r_targets(
    entry_price: Decimal,
    stop_loss: Decimal,
    direction: TradeDirection = TradeDirection.LONG,
) -> Dict[str, Decimal]:
    """2R and 3R price targets from the entry/stop distance."""
    distance = abs(entry_price - stop_loss) * direction.sign
    return {
        "r_target_2": entry_price + 2 * distance,
        "r_target_3": entry_price + 3 * distance,
    }
