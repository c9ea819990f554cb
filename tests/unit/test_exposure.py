"""Unit tests for exposure aggregation."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradejournal.core.models import ActionType, TradeAction
from tradejournal.metrics.exposure import exposure

from conftest import BASE_TIME, closed_trade, open_trade

CAPITAL = Decimal("25000")


def valued(trade, unrealized):
    return trade.model_copy(update={"unrealized_pnl": Decimal(unrealized)})


def build_trades():
    opened_today = valued(
        open_trade(ticker="AAPL", opened_at=BASE_TIME - timedelta(hours=1),
                   initial_position_risk=Decimal("2")),
        "500",
    )
    opened_this_week = valued(
        open_trade(ticker="MSFT", opened_at=BASE_TIME - timedelta(days=3),
                   initial_position_risk=Decimal("1")),
        "-250",
    )
    older = open_trade(ticker="NVDA", opened_at=BASE_TIME - timedelta(days=20),
                       initial_position_risk=Decimal("1.5"))
    older.apply_action(TradeAction(
        action_type=ActionType.SELL,
        timestamp=BASE_TIME - timedelta(days=10),
        shares=Decimal("10"),
        price=Decimal("125"),
    ))
    return [opened_today, opened_this_week, older, closed_trade()]


class TestExposure:
    """Test daily, new and open buckets."""

    def test_daily_bucket(self):
        result = exposure(build_trades(), CAPITAL, now=BASE_TIME, timezone="America/New_York")

        assert result.daily_risk == Decimal("2")
        assert result.daily_profit == Decimal("2")
        assert result.daily_delta == 0

    def test_new_bucket(self):
        result = exposure(build_trades(), CAPITAL, now=BASE_TIME, new_days=7)

        assert result.new_risk == Decimal("3")
        assert result.new_profit == Decimal("1")
        assert result.new_delta == Decimal("-2")

    def test_zero_day_new_window(self):
        """Test an explicit zero-day window is kept rather than defaulted."""
        result = exposure(build_trades(), CAPITAL, now=BASE_TIME, new_days=0)

        assert result.new_risk == 0
        assert result.new_profit == 0

    def test_open_bucket_includes_partial_exits(self):
        """Test open profit adds realized PnL of partially exited trades."""
        result = exposure(build_trades(), CAPITAL, now=BASE_TIME)

        assert result.open_risk == Decimal("4.5")
        # (500 - 250 + 0 + 250 realized) / 25000
        assert result.open_profit == Decimal("2")
        assert result.open_delta == Decimal("-2.5")

    def test_today_uses_journal_timezone(self):
        """Test a fill late on the previous New York day is not 'today'."""
        late_yesterday = datetime(2024, 3, 12, 3, 0, tzinfo=timezone.utc)
        trade = open_trade(opened_at=late_yesterday, initial_position_risk=Decimal("2"))

        in_new_york = exposure([trade], CAPITAL, now=BASE_TIME, timezone="America/New_York")
        in_utc = exposure([trade], CAPITAL, now=BASE_TIME, timezone="UTC")

        assert in_new_york.daily_risk == 0
        assert in_utc.daily_risk == Decimal("2")

    def test_no_open_trades(self):
        result = exposure([closed_trade()], CAPITAL, now=BASE_TIME)

        assert result.open_risk == 0
        assert result.open_profit == 0

    def test_zero_capital(self):
        result = exposure(build_trades(), Decimal("0"), now=BASE_TIME)

        assert result.open_profit == 0
