"""Data models for the trade journal metrics engine.

This module defines the records the engine consumes and produces:
- Trade records built from an ordered BUY/SELL action log
- Quotes and OHLCV candles from external market data sources
- Capital snapshots forming the capital ledger
- Derived, ephemeral metrics (per trade and per portfolio)

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects; naive inputs are
interpreted as UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradejournal.core.exceptions import ValidationError, safe_divide


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class TradeDirection(str, Enum):
    """Trade direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is TradeDirection.LONG else -1


class AssetType(str, Enum):
    """Kind of instrument traded."""
    STOCK = "stock"
    ETF = "etf"
    OPTION = "option"
    CRYPTO = "crypto"
    OTHER = "other"


class TradeStatus(str, Enum):
    """Trade lifecycle status."""
    OPEN = "open"
    CLOSED = "closed"


class ActionType(str, Enum):
    """Journal action type. BUY adds to a position, SELL reduces it."""
    BUY = "buy"
    SELL = "sell"


class OutcomeStatus(str, Enum):
    """How cleanly a result was produced."""
    OK = "ok"                     # Computed from fresh data
    DEGRADED = "degraded"         # Computed, but with stale or missing inputs
    FAILED = "failed"             # Nothing usable was produced


# =============================================================================
# Result Type
# =============================================================================

T = TypeVar("T")


@dataclass
class Outcome(Generic[T]):
    """Result of an operation backed by fallible external data."""
    status: OutcomeStatus
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(status=OutcomeStatus.OK, value=value)

    @classmethod
    def degraded(cls, value: T, reason: str) -> "Outcome[T]":
        return cls(status=OutcomeStatus.DEGRADED, value=value, reason=reason)

    @classmethod
    def failed(cls, reason: str, value: Optional[T] = None) -> "Outcome[T]":
        return cls(status=OutcomeStatus.FAILED, value=value, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @property
    def is_degraded(self) -> bool:
        return self.status == OutcomeStatus.DEGRADED

    @property
    def is_failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    def unwrap_or(self, default: T) -> T:
        """Return the value, or ``default`` when there is none."""
        return default if self.value is None else self.value


# =============================================================================
# Trade Models
# =============================================================================

class TradeAction(BaseModel):
    """One BUY or SELL fill in a trade's action log."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    action_type: ActionType = Field(..., description="BUY or SELL")
    timestamp: datetime = Field(default_factory=utc_now, description="Fill time (UTC)")
    shares: Decimal = Field(..., gt=0, description="Filled quantity")
    price: Decimal = Field(..., ge=0, description="Fill price")

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def notional(self) -> Decimal:
        """Fill value (shares * price)."""
        return self.shares * self.price


class Trade(BaseModel):
    """One position, opened by BUY actions and reduced/closed by SELL actions.

    Invariants:
        - remaining_shares <= total_shares
        - once shares have been filled, status is CLOSED iff remaining_shares == 0
        - entry_price is the volume-weighted average of BUY fills and only
          changes on BUY
        - realized_pnl only changes on SELL, accumulated across partial exits

    A trade with no fills yet (total_shares == 0) is treated as OPEN.

    Attributes:
        ticker: Instrument symbol
        direction: Long or short
        entry_price: Volume-weighted average BUY price
        total_shares: Sum of all BUY quantities
        remaining_shares: Shares still held
        stop_loss_price: Original full stop
        trailing_stop: Optional trailing stop; overrides the original stop for risk
        open_risk: Fractional stop distance (|entry - stop| / entry)
        initial_risk_amount: Dollar risk at the first BUY
        initial_position_risk: Initial risk as a % of capital at entry
        actions: Ordered action log
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    # Required fields
    ticker: str = Field(..., min_length=1, description="Instrument symbol")
    entry_price: Decimal = Field(..., ge=0, description="Weighted average entry price")

    # Identification
    id: str = Field(default_factory=lambda: str(uuid4()), description="Trade ID")
    user_id: Optional[str] = Field(default=None, description="Owning user")

    # Classification
    direction: TradeDirection = Field(default=TradeDirection.LONG, description="Direction")
    asset_type: AssetType = Field(default=AssetType.STOCK, description="Asset type")
    status: TradeStatus = Field(default=TradeStatus.OPEN, description="Lifecycle status")

    # Size
    total_shares: Decimal = Field(default=Decimal("0"), ge=0, description="Total bought")
    remaining_shares: Decimal = Field(default=Decimal("0"), ge=0, description="Still held")
    total_cost: Decimal = Field(default=Decimal("0"), ge=0, description="Sum of BUY notionals")

    # Stops and targets
    stop_loss_price: Optional[Decimal] = Field(default=None, ge=0, description="Full stop")
    stop_loss_33_percent: Optional[Decimal] = Field(default=None, ge=0, description="Stop for 33% tier")
    stop_loss_66_percent: Optional[Decimal] = Field(default=None, ge=0, description="Stop for 66% tier")
    trailing_stop: Optional[Decimal] = Field(default=None, ge=0, description="Trailing stop")
    r_target_2: Optional[Decimal] = Field(default=None, description="2R price target")
    r_target_3: Optional[Decimal] = Field(default=None, description="3R price target")

    # Risk
    open_risk: Optional[Decimal] = Field(default=None, ge=0, description="Fractional stop distance")
    initial_risk_amount: Optional[Decimal] = Field(default=None, ge=0, description="Dollar risk at entry")
    initial_position_risk: Optional[Decimal] = Field(default=None, description="Initial risk % of capital")

    # PnL
    realized_pnl: Decimal = Field(default=Decimal("0"), description="Realized PnL")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="Unrealized PnL")

    # Timestamps
    entry_datetime: Optional[datetime] = Field(default=None, description="First BUY time")
    exit_datetime: Optional[datetime] = Field(default=None, description="Closing SELL time")
    exit_price: Optional[Decimal] = Field(default=None, description="Closing SELL price")

    # Journal
    actions: List[TradeAction] = Field(default_factory=list, description="Ordered action log")
    strategy: Optional[str] = Field(default=None, description="Strategy name")
    setups: List[str] = Field(default_factory=list, description="Setup tags")
    notes: Optional[str] = Field(default=None, description="Free-form notes")
    mistakes: Optional[str] = Field(default=None, description="Mistakes noted")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, v: str) -> str:
        """Strip and uppercase the ticker."""
        v = v.strip().upper()
        if not v:
            raise ValueError("Ticker must not be blank")
        return v

    @field_validator("entry_datetime", "exit_datetime")
    @classmethod
    def datetimes_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_share_invariants(self) -> "Trade":
        """Validate remaining <= total and status agrees with remaining."""
        if self.remaining_shares > self.total_shares:
            raise ValueError("remaining_shares cannot exceed total_shares")
        if self.total_shares > 0:
            should_be_closed = self.remaining_shares == 0
            if should_be_closed != (self.status == TradeStatus.CLOSED):
                raise ValueError(
                    f"status {self.status.value} inconsistent with "
                    f"remaining_shares {self.remaining_shares}"
                )
        return self

    @property
    def is_open(self) -> bool:
        """True if the trade still holds shares (or has no fills yet)."""
        return self.status == TradeStatus.OPEN

    @property
    def is_closed(self) -> bool:
        """True if the position has been fully exited."""
        return self.status == TradeStatus.CLOSED

    @property
    def sold_shares(self) -> Decimal:
        """Shares already exited."""
        return self.total_shares - self.remaining_shares

    @property
    def cost_basis(self) -> Decimal:
        """Entry value of the full position."""
        return self.entry_price * self.total_shares

    def mark_to_market(self, price: Decimal) -> Decimal:
        """Unrealized PnL of the remaining shares at ``price``."""
        return (price - self.entry_price) * self.remaining_shares * self.direction.sign

    # =========================================================================
    # Action Replay
    # =========================================================================

    @classmethod
    def open(
        cls,
        ticker: str,
        shares: Decimal,
        price: Decimal,
        stop_loss_price: Optional[Decimal] = None,
        timestamp: Optional[datetime] = None,
        **kwargs
    ) -> "Trade":
        """Create a trade from its first BUY.

        Args:
            ticker: Instrument symbol
            shares: First fill quantity
            price: First fill price
            stop_loss_price: Original full stop, used to derive open_risk
            timestamp: Fill time (defaults to now)
            **kwargs: Additional trade fields

        Returns:
            OPEN trade with one BUY in its action log
        """
        trade = cls(
            ticker=ticker,
            entry_price=price,
            stop_loss_price=stop_loss_price,
            **kwargs
        )
        trade.apply_action(TradeAction(
            action_type=ActionType.BUY,
            timestamp=timestamp or utc_now(),
            shares=shares,
            price=price,
        ))
        return trade

    @classmethod
    def from_actions(cls, ticker: str, actions: List[TradeAction], **kwargs) -> "Trade":
        """Rebuild a trade by replaying its action log in timestamp order."""
        ordered = sorted(actions, key=lambda a: a.timestamp)
        if not ordered or ordered[0].action_type != ActionType.BUY:
            raise ValidationError(f"{ticker}: action log must start with a BUY")
        first = ordered[0]
        trade = cls(ticker=ticker, entry_price=first.price, **kwargs)
        for action in ordered:
            trade.apply_action(action)
        return trade

    def apply_action(self, action: TradeAction) -> None:
        """Apply one action to this trade in place.

        Raises:
            ValidationError: If the trade is closed or a SELL exceeds the
                remaining shares
        """
        if self.is_closed:
            raise ValidationError(f"{self.ticker}: trade is closed", trade_id=self.id)

        if action.action_type == ActionType.BUY:
            self._apply_buy(action)
        else:
            self._apply_sell(action)

        self.actions.append(action)

    def _apply_buy(self, action: TradeAction) -> None:
        first_fill = self.total_shares == 0

        self.total_shares += action.shares
        self.remaining_shares += action.shares
        self.total_cost += action.notional
        self.entry_price = safe_divide(self.total_cost, self.total_shares)

        if first_fill:
            self.entry_datetime = action.timestamp
            self._set_initial_risk(action.shares)

    def _apply_sell(self, action: TradeAction) -> None:
        if action.shares > self.remaining_shares:
            raise ValidationError(
                f"{self.ticker}: cannot sell {action.shares}, only "
                f"{self.remaining_shares} remaining",
                trade_id=self.id,
            )

        self.realized_pnl += (
            (action.price - self.entry_price) * action.shares * self.direction.sign
        )
        self.remaining_shares -= action.shares

        if self.remaining_shares == 0:
            self.status = TradeStatus.CLOSED
            self.unrealized_pnl = Decimal("0")
            self.exit_price = action.price
            self.exit_datetime = action.timestamp

    def _set_initial_risk(self, shares: Decimal) -> None:
        if self.stop_loss_price is not None:
            distance = abs(self.entry_price - self.stop_loss_price)
            if self.open_risk is None:
                self.open_risk = safe_divide(distance, self.entry_price)
            self.initial_risk_amount = distance * shares
        elif self.open_risk is not None:
            self.initial_risk_amount = self.entry_price * self.open_risk * shares

    def annotate(self, notes: Optional[str] = None, mistakes: Optional[str] = None) -> None:
        """Update journal annotations. Allowed on closed trades."""
        if notes is not None:
            self.notes = notes
        if mistakes is not None:
            self.mistakes = mistakes


# =============================================================================
# Market Data Models
# =============================================================================

class PriceUpdate(BaseModel):
    """A price as reported by a quote source."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    price: Decimal = Field(..., ge=0, description="Last price")
    as_of: Optional[str] = Field(default=None, description="Source-reported update time")


class Quote(BaseModel):
    """Last known price for a symbol, as held by the quote cache."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Instrument symbol")
    price: Decimal = Field(..., ge=0, description="Last price")
    fetched_at: datetime = Field(default_factory=utc_now, description="Fetch time (UTC)")
    last_update: str = Field(default="", description="Human-readable update time")

    @field_validator("fetched_at")
    @classmethod
    def fetched_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def age_seconds(self, now: datetime) -> float:
        """Seconds since this quote was fetched."""
        return (now - self.fetched_at).total_seconds()


class Candle(BaseModel):
    """One OHLCV bar."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    time: datetime = Field(..., description="Bar open time (UTC)")
    open: Decimal = Field(..., description="Opening price")
    high: Decimal = Field(..., description="Highest price")
    low: Decimal = Field(..., description="Lowest price")
    close: Decimal = Field(..., description="Closing price")
    volume: Decimal = Field(default=Decimal("0"), description="Volume")

    @field_validator("time")
    @classmethod
    def time_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        """Validate low is <= high."""
        high = info.data.get("high")
        if high is not None and v > high:
            raise ValueError("Low must be <= high")
        return v


class CachedSeriesEntry(BaseModel):
    """One cached OHLCV history for a (symbol, start, end) key."""

    key: str = Field(..., description="Cache key")
    candles: List[Candle] = Field(default_factory=list, description="Ordered candles")
    inserted_at: datetime = Field(..., description="Insertion time")
    expires_at: datetime = Field(..., description="Expiry time")
    last_accessed_at: datetime = Field(..., description="Last successful read")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


# =============================================================================
# Capital Models
# =============================================================================

class CapitalSnapshot(BaseModel):
    """Point-in-time portfolio value, one row of the capital ledger.

    day_high/day_low default to capital when not recorded.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()), description="Snapshot ID")
    user_id: Optional[str] = Field(default=None, description="Owning user")
    timestamp: datetime = Field(default_factory=utc_now, description="Measurement time")
    capital: Decimal = Field(..., description="Portfolio value")
    high_water_mark: Decimal = Field(default=Decimal("0"), description="Running peak")
    current_drawdown: Decimal = Field(default=Decimal("0"), description="Drawdown from peak %")
    max_drawdown: Decimal = Field(default=Decimal("0"), description="Max drawdown %")
    max_runup: Decimal = Field(default=Decimal("0"), description="Max run-up %")
    realized_pnl: Decimal = Field(default=Decimal("0"), description="Total realized PnL")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="Total unrealized PnL")
    day_high: Optional[Decimal] = Field(default=None, description="Intraday high capital")
    day_low: Optional[Decimal] = Field(default=None, description="Intraday low capital")
    trade_count: int = Field(default=0, ge=0, description="Trades at measurement time")
    is_end_of_day: bool = Field(default=False, description="Finalized for the day")

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def high(self) -> Decimal:
        """Day high, falling back to capital."""
        return self.capital if self.day_high is None else self.day_high

    @property
    def low(self) -> Decimal:
        """Day low, falling back to capital."""
        return self.capital if self.day_low is None else self.day_low


class EquityPoint(BaseModel):
    """One point of a resampled equity curve."""

    timestamp: datetime
    capital: Decimal


# =============================================================================
# Derived Metrics
# =============================================================================

class TradeMetrics(BaseModel):
    """Valuation of one trade against one quote snapshot."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    trade_id: str
    ticker: str
    status: TradeStatus
    last_price: Optional[Decimal] = Field(default=None, description="Price used for valuation")
    quote_missing: bool = Field(default=False, description="Entry price used as stand-in")

    market_value: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    unrealized_pnl_percentage: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    realized_pnl_percentage: Decimal = Decimal("0")
    trimmed_percentage: Decimal = Decimal("0")
    portfolio_weight: Decimal = Decimal("0")
    portfolio_impact: Decimal = Decimal("0")
    current_risk_amount: Decimal = Decimal("0")
    initial_position_risk: Decimal = Decimal("0")
    current_var: Decimal = Decimal("0")
    risk_reward_ratio: Decimal = Decimal("0")

    def to_trade_fields(self) -> Dict[str, Any]:
        """Recomputed fields worth persisting back onto the trade record."""
        fields = {
            "market_value": self.market_value,
            "unrealized_pnl": self.unrealized_pnl,
            "unrealized_pnl_percentage": self.unrealized_pnl_percentage,
            "realized_pnl_percentage": self.realized_pnl_percentage,
            "trimmed_percentage": self.trimmed_percentage,
            "portfolio_weight": self.portfolio_weight,
            "portfolio_impact": self.portfolio_impact,
            "current_risk_amount": self.current_risk_amount,
            "initial_position_risk": self.initial_position_risk,
            "current_var": self.current_var,
            "risk_reward_ratio": self.risk_reward_ratio,
        }
        if not self.quote_missing and self.last_price is not None:
            fields["last_price"] = self.last_price
        return fields


class StreakMetrics(BaseModel):
    """Win/loss streaks over closed trades."""

    current: int = Field(default=0, description="Signed: >0 winning, <0 losing")
    longest_win: int = Field(default=0, ge=0)
    longest_loss: int = Field(default=0, ge=0)


class PerformanceMetrics(BaseModel):
    """Aggregate performance over closed trades."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    break_even_trades: int = 0

    win_rate: Decimal = Field(default=Decimal("0"), description="Winning trades %")
    avg_win: Decimal = Decimal("0")
    avg_loss: Decimal = Field(default=Decimal("0"), description="Absolute average loss")
    profit_factor: Decimal = Decimal("0")
    payoff_ratio: Decimal = Decimal("0")
    expectancy: Decimal = Decimal("0")
    largest_win: Decimal = Decimal("0")
    largest_loss: Decimal = Decimal("0")

    avg_win_r: Decimal = Field(default=Decimal("0"), description="Average win in R")
    avg_loss_r: Decimal = Field(default=Decimal("0"), description="Average loss in R")
    avg_risk_reward: Decimal = Decimal("0")
    avg_gain_percentage: Decimal = Decimal("0")
    avg_loss_percentage: Decimal = Decimal("0")

    streaks: StreakMetrics = Field(default_factory=StreakMetrics)


class ExposureMetrics(BaseModel):
    """Risk and profit exposure as % of current capital.

    Daily = opened today, new = opened in the trailing window,
    open = all open trades. Delta = profit - risk.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    daily_risk: Decimal = Decimal("0")
    daily_profit: Decimal = Decimal("0")
    daily_delta: Decimal = Decimal("0")
    new_risk: Decimal = Decimal("0")
    new_profit: Decimal = Decimal("0")
    new_delta: Decimal = Decimal("0")
    open_risk: Decimal = Decimal("0")
    open_profit: Decimal = Decimal("0")
    open_delta: Decimal = Decimal("0")


class DrawdownRunup(BaseModel):
    """Result of folding the capital ledger."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    max_drawdown: Decimal = Decimal("0")
    max_runup: Decimal = Decimal("0")
    current_drawdown: Decimal = Decimal("0")
    high_water_mark: Optional[Decimal] = None


class RiskAdjustedReturns(BaseModel):
    """Return statistics of end-of-day capital."""

    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    volatility: float = Field(default=0.0, description="Annualized volatility %")
    observations: int = 0


class ExcursionMetrics(BaseModel):
    """Maximum adverse/favorable excursion of a trade over its price history."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    trade_id: str
    mae_percentage: Decimal = Decimal("0")
    mfe_percentage: Decimal = Decimal("0")
    mae_amount: Decimal = Decimal("0")
    mfe_amount: Decimal = Decimal("0")
    mae_r: Decimal = Decimal("0")
    mfe_r: Decimal = Decimal("0")
    candle_count: int = 0


class PortfolioMetrics(BaseModel):
    """One consistent metrics view of a trade set. Never the source of truth."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: Optional[str] = None
    computed_at: datetime = Field(default_factory=utc_now)

    starting_capital: Decimal
    current_capital: Decimal
    total_realized_pnl: Decimal = Decimal("0")
    total_unrealized_pnl: Decimal = Decimal("0")
    open_trades: int = 0
    closed_trades: int = 0
    dropped_trades: int = 0

    trades: Dict[str, TradeMetrics] = Field(default_factory=dict)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    exposure: ExposureMetrics = Field(default_factory=ExposureMetrics)
    drawdown: DrawdownRunup = Field(default_factory=DrawdownRunup)
    risk_adjusted: RiskAdjustedReturns = Field(default_factory=RiskAdjustedReturns)
    capital_snapshot: Optional[CapitalSnapshot] = Field(
        default=None, description="Ledger entry for this computation"
    )

    status: OutcomeStatus = OutcomeStatus.OK
    warnings: List[str] = Field(default_factory=list)

    @property
    def streaks(self) -> StreakMetrics:
        return self.performance.streaks

    @property
    def max_drawdown(self) -> Decimal:
        return self.drawdown.max_drawdown

    @property
    def max_runup(self) -> Decimal:
        return self.drawdown.max_runup

    @property
    def total_pnl(self) -> Decimal:
        """Realized plus unrealized PnL."""
        return self.total_realized_pnl + self.total_unrealized_pnl
