"""Per-trade valuation against a quote snapshot."""
from decimal import Decimal
from typing import Optional

import structlog

from tradejournal.core.exceptions import safe_divide
from tradejournal.core.models import Quote, Trade, TradeMetrics
from tradejournal.metrics import risk

logger = structlog.get_logger(__name__)

HUNDRED = Decimal("100")


def valuate(
    trade: Trade,
    quote: Optional[Quote],
    starting_capital: Decimal,
    current_capital: Decimal,
) -> TradeMetrics:
    """Value one trade.

    Closed trades ignore the quote: unrealized PnL is 0 and the trade is
    100% trimmed. Open trades are marked at the quote, or at the entry price
    when the quote is missing (flagged with ``quote_missing``).

    Zero entry price, zero shares and zero capital resolve the affected
    percentages to 0.

    Args:
        trade: Trade to value
        quote: Latest quote for the trade's ticker, if any
        starting_capital: Capital at the start of the journal
        current_capital: Starting capital plus all PnL

    Returns:
        TradeMetrics for the trade
    """
    realized = trade.realized_pnl
    realized_pct = safe_divide(realized, trade.cost_basis) * HUNDRED
    position_risk = risk.initial_position_risk(trade, current_capital)

    if trade.is_closed:
        return TradeMetrics(
            trade_id=trade.id,
            ticker=trade.ticker,
            status=trade.status,
            last_price=trade.exit_price,
            realized_pnl=realized,
            realized_pnl_percentage=realized_pct,
            trimmed_percentage=HUNDRED,
            portfolio_impact=safe_divide(realized, starting_capital) * HUNDRED,
            initial_position_risk=position_risk,
            risk_reward_ratio=risk.risk_reward_ratio(trade),
        )

    quote_missing = quote is None
    if quote_missing:
        logger.debug("valuation.quote_missing", ticker=trade.ticker, trade_id=trade.id)
    price = trade.entry_price if quote_missing else quote.price

    market_value = trade.remaining_shares * price
    unrealized = trade.mark_to_market(price)
    unrealized_pct = (
        safe_divide(price - trade.entry_price, trade.entry_price)
        * HUNDRED
        * trade.direction.sign
    )
    trimmed_pct = safe_divide(trade.sold_shares, trade.total_shares) * HUNDRED
    current_risk = risk.current_risk_amount(trade, price)

    return TradeMetrics(
        trade_id=trade.id,
        ticker=trade.ticker,
        status=trade.status,
        last_price=price,
        quote_missing=quote_missing,
        market_value=market_value,
        unrealized_pnl=unrealized,
        unrealized_pnl_percentage=unrealized_pct,
        realized_pnl=realized,
        realized_pnl_percentage=realized_pct,
        trimmed_percentage=trimmed_pct,
        portfolio_weight=safe_divide(market_value, current_capital) * HUNDRED,
        portfolio_impact=safe_divide(unrealized + realized, starting_capital) * HUNDRED,
        current_risk_amount=current_risk,
        initial_position_risk=position_risk,
        current_var=safe_divide(current_risk, current_capital) * HUNDRED,
        risk_reward_ratio=risk.risk_reward_ratio(trade, unrealized_pnl=unrealized),
    )
