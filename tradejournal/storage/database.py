"""Database storage for trades, user settings and the capital ledger."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import (Boolean, Column, DateTime, Integer, JSON, Numeric,
                        String, Text, select)
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from tradejournal.core.config import database_config
from tradejournal.core.exceptions import ValidationError
from tradejournal.core.models import (AssetType, CapitalSnapshot, Trade,
                                      TradeAction, TradeDirection, TradeStatus)
from tradejournal.storage.base import CapitalLedger, SettingsStore, TradeStore

logger = structlog.get_logger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeModel(Base):
    """SQLAlchemy model for trades."""
    __tablename__ = 'trades'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    ticker = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    asset_type = Column(String, nullable=False)
    status = Column(String, nullable=False)

    entry_price = Column(Numeric(36, 18), nullable=False)
    total_shares = Column(Numeric(36, 18), default=0)
    remaining_shares = Column(Numeric(36, 18), default=0)
    total_cost = Column(Numeric(36, 18), default=0)

    stop_loss_price = Column(Numeric(36, 18), nullable=True)
    stop_loss_33_percent = Column(Numeric(36, 18), nullable=True)
    stop_loss_66_percent = Column(Numeric(36, 18), nullable=True)
    trailing_stop = Column(Numeric(36, 18), nullable=True)
    r_target_2 = Column(Numeric(36, 18), nullable=True)
    r_target_3 = Column(Numeric(36, 18), nullable=True)

    open_risk = Column(Numeric(36, 18), nullable=True)
    initial_risk_amount = Column(Numeric(36, 18), nullable=True)
    initial_position_risk = Column(Numeric(36, 18), nullable=True)

    realized_pnl = Column(Numeric(36, 18), default=0)
    unrealized_pnl = Column(Numeric(36, 18), default=0)

    entry_datetime = Column(DateTime, nullable=True)
    exit_datetime = Column(DateTime, nullable=True)
    exit_price = Column(Numeric(36, 18), nullable=True)

    actions_json = Column(JSON, default=list)
    strategy = Column(String, nullable=True)
    setups_json = Column(JSON, default=list)
    notes = Column(Text, nullable=True)
    mistakes = Column(Text, nullable=True)
    metadata_json = Column(JSON, default=dict)

    # Recomputed by the metrics engine
    last_price = Column(Numeric(36, 18), nullable=True)
    market_value = Column(Numeric(36, 18), nullable=True)
    unrealized_pnl_percentage = Column(Numeric(36, 18), nullable=True)
    realized_pnl_percentage = Column(Numeric(36, 18), nullable=True)
    trimmed_percentage = Column(Numeric(36, 18), nullable=True)
    portfolio_weight = Column(Numeric(36, 18), nullable=True)
    portfolio_impact = Column(Numeric(36, 18), nullable=True)
    current_risk_amount = Column(Numeric(36, 18), nullable=True)
    current_var = Column(Numeric(36, 18), nullable=True)
    risk_reward_ratio = Column(Numeric(36, 18), nullable=True)
    updated_at = Column(DateTime, nullable=True)


class UserSettingsModel(Base):
    """SQLAlchemy model for per-user settings."""
    __tablename__ = 'user_settings'

    user_id = Column(String, primary_key=True)
    starting_cash = Column(Numeric(36, 18), nullable=True)
    updated_at = Column(DateTime, default=_utcnow)


class CapitalSnapshotModel(Base):
    """SQLAlchemy model for capital ledger snapshots."""
    __tablename__ = 'capital_snapshots'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    capital = Column(Numeric(36, 18), nullable=False)
    high_water_mark = Column(Numeric(36, 18), default=0)
    current_drawdown = Column(Numeric(36, 18), default=0)
    max_drawdown = Column(Numeric(36, 18), default=0)
    max_runup = Column(Numeric(36, 18), default=0)
    realized_pnl = Column(Numeric(36, 18), default=0)
    unrealized_pnl = Column(Numeric(36, 18), default=0)
    day_high = Column(Numeric(36, 18), nullable=True)
    day_low = Column(Numeric(36, 18), nullable=True)
    trade_count = Column(Integer, default=0)
    is_end_of_day = Column(Boolean, default=False)


# Trade fields the engine may write back through update_trade
UPDATABLE_TRADE_FIELDS = {
    "last_price", "market_value", "unrealized_pnl", "unrealized_pnl_percentage",
    "realized_pnl_percentage", "trimmed_percentage", "portfolio_weight",
    "portfolio_impact", "current_risk_amount", "initial_position_risk",
    "current_var", "risk_reward_ratio", "trailing_stop", "notes", "mistakes",
}

_SNAPSHOT_FIELDS = (
    "user_id", "timestamp", "capital", "high_water_mark", "current_drawdown",
    "max_drawdown", "max_runup", "realized_pnl", "unrealized_pnl", "day_high",
    "day_low", "trade_count", "is_end_of_day",
)


class Database(TradeStore, SettingsStore, CapitalLedger):
    """Async database implementing the trade, settings and ledger stores."""

    def __init__(self, db_url: Optional[str] = None, echo: Optional[bool] = None):
        db_url = db_url or database_config.database_url
        # Convert SQLite URL to async version if needed
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs: Dict[str, Any] = {
            "echo": database_config.echo if echo is None else echo,
        }
        if ":memory:" in db_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=str(self.engine.url))

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # =========================================================================
    # Trades
    # =========================================================================

    async def save_trade(self, trade: Trade):
        """Insert or fully replace a trade record."""
        async with self.session_maker() as session:
            db_trade = await session.get(TradeModel, trade.id)
            if db_trade is None:
                db_trade = TradeModel(id=trade.id)
                session.add(db_trade)
            self._fill_trade_model(db_trade, trade)
            await session.commit()

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        """Get a trade by ID."""
        async with self.session_maker() as session:
            db_trade = await session.get(TradeModel, trade_id)
            if db_trade is None:
                return None
            return self._trade_from_model(db_trade)

    async def list_trades(self, user_id: str) -> List[Trade]:
        """All valid trades of a user, oldest entry first.

        Rows that fail validation are logged and skipped.
        """
        async with self.session_maker() as session:
            result = await session.execute(
                select(TradeModel)
                .where(TradeModel.user_id == user_id)
                .order_by(TradeModel.entry_datetime)
            )
            db_trades = result.scalars().all()

        trades = []
        for db_trade in db_trades:
            try:
                trades.append(self._trade_from_model(db_trade))
            except ValidationError as e:
                logger.warning("database.invalid_trade_skipped", trade_id=db_trade.id, error=str(e))
        return trades

    async def update_trade(self, trade_id: str, fields: Dict[str, Any]) -> None:
        """Persist recomputed fields onto a trade.

        Raises:
            KeyError: If the trade does not exist
        """
        unknown = set(fields) - UPDATABLE_TRADE_FIELDS
        if unknown:
            logger.debug("database.update_fields_ignored", trade_id=trade_id, fields=sorted(unknown))

        async with self.session_maker() as session:
            db_trade = await session.get(TradeModel, trade_id)
            if db_trade is None:
                raise KeyError(f"Trade not found: {trade_id}")

            for name, value in fields.items():
                if name in UPDATABLE_TRADE_FIELDS:
                    setattr(db_trade, name, value)
            db_trade.updated_at = _utcnow()
            await session.commit()

    async def get_trade_fields(self, trade_id: str) -> Optional[Dict[str, Any]]:
        """Raw stored values of the recomputed trade columns."""
        async with self.session_maker() as session:
            db_trade = await session.get(TradeModel, trade_id)
            if db_trade is None:
                return None
            return {name: getattr(db_trade, name) for name in sorted(UPDATABLE_TRADE_FIELDS)}

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_starting_cash(self, user_id: str) -> Optional[Decimal]:
        """Configured starting capital of a user."""
        async with self.session_maker() as session:
            settings = await session.get(UserSettingsModel, user_id)
            if settings is None or settings.starting_cash is None:
                return None
            return Decimal(settings.starting_cash)

    async def set_starting_cash(self, user_id: str, amount: Decimal):
        """Set the starting capital of a user."""
        async with self.session_maker() as session:
            settings = await session.get(UserSettingsModel, user_id)
            if settings is None:
                settings = UserSettingsModel(user_id=user_id)
                session.add(settings)
            settings.starting_cash = amount
            settings.updated_at = _utcnow()
            await session.commit()

    # =========================================================================
    # Capital Ledger
    # =========================================================================

    async def append_snapshot(self, snapshot: CapitalSnapshot) -> None:
        """Append a snapshot, replacing one with the same id (same-day update)."""
        async with self.session_maker() as session:
            db_snapshot = await session.get(CapitalSnapshotModel, snapshot.id)
            if db_snapshot is None:
                db_snapshot = CapitalSnapshotModel(id=snapshot.id)
                session.add(db_snapshot)
            for name in _SNAPSHOT_FIELDS:
                setattr(db_snapshot, name, getattr(snapshot, name))
            await session.commit()

    async def list_snapshots(self, user_id: str) -> List[CapitalSnapshot]:
        """Snapshots of a user, oldest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(CapitalSnapshotModel)
                .where(CapitalSnapshotModel.user_id == user_id)
                .order_by(CapitalSnapshotModel.timestamp)
            )
            return [self._snapshot_from_model(s) for s in result.scalars().all()]

    async def latest_snapshot(self, user_id: str) -> Optional[CapitalSnapshot]:
        """Most recent snapshot of a user."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(CapitalSnapshotModel)
                .where(CapitalSnapshotModel.user_id == user_id)
                .order_by(CapitalSnapshotModel.timestamp.desc())
                .limit(1)
            )
            db_snapshot = result.scalar_one_or_none()
            return self._snapshot_from_model(db_snapshot) if db_snapshot else None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fill_trade_model(self, model: TradeModel, trade: Trade):
        """Copy a Trade onto its DB model."""
        model.user_id = trade.user_id
        model.ticker = trade.ticker
        model.direction = trade.direction.value
        model.asset_type = trade.asset_type.value
        model.status = trade.status.value
        for name in (
            "entry_price", "total_shares", "remaining_shares", "total_cost",
            "stop_loss_price", "stop_loss_33_percent", "stop_loss_66_percent",
            "trailing_stop", "r_target_2", "r_target_3", "open_risk",
            "initial_risk_amount", "initial_position_risk", "realized_pnl",
            "unrealized_pnl", "entry_datetime", "exit_datetime", "exit_price",
            "strategy", "notes", "mistakes",
        ):
            setattr(model, name, getattr(trade, name))
        model.actions_json = [a.model_dump(mode="json") for a in trade.actions]
        model.setups_json = list(trade.setups)
        model.metadata_json = trade.metadata

    def _trade_from_model(self, model: TradeModel) -> Trade:
        """Convert DB model to Trade object.

        Raises:
            ValidationError: If the stored row is not a valid trade
        """
        try:
            return Trade(
                id=model.id,
                user_id=model.user_id,
                ticker=model.ticker,
                direction=TradeDirection(model.direction),
                asset_type=AssetType(model.asset_type),
                status=TradeStatus(model.status),
                entry_price=model.entry_price,
                total_shares=model.total_shares or 0,
                remaining_shares=model.remaining_shares or 0,
                total_cost=model.total_cost or 0,
                stop_loss_price=model.stop_loss_price,
                stop_loss_33_percent=model.stop_loss_33_percent,
                stop_loss_66_percent=model.stop_loss_66_percent,
                trailing_stop=model.trailing_stop,
                r_target_2=model.r_target_2,
                r_target_3=model.r_target_3,
                open_risk=model.open_risk,
                initial_risk_amount=model.initial_risk_amount,
                initial_position_risk=model.initial_position_risk,
                realized_pnl=model.realized_pnl or 0,
                unrealized_pnl=model.unrealized_pnl or 0,
                entry_datetime=model.entry_datetime,
                exit_datetime=model.exit_datetime,
                exit_price=model.exit_price,
                actions=[TradeAction.model_validate(a) for a in model.actions_json or []],
                strategy=model.strategy,
                setups=model.setups_json or [],
                notes=model.notes,
                mistakes=model.mistakes,
                metadata=model.metadata_json or {},
            )
        except (PydanticValidationError, ValueError) as e:
            raise ValidationError(str(e), trade_id=model.id) from e

    def _snapshot_from_model(self, model: CapitalSnapshotModel) -> CapitalSnapshot:
        """Convert DB model to CapitalSnapshot object."""
        return CapitalSnapshot(
            id=model.id,
            user_id=model.user_id,
            timestamp=model.timestamp,
            capital=model.capital,
            high_water_mark=model.high_water_mark or 0,
            current_drawdown=model.current_drawdown or 0,
            max_drawdown=model.max_drawdown or 0,
            max_runup=model.max_runup or 0,
            realized_pnl=model.realized_pnl or 0,
            unrealized_pnl=model.unrealized_pnl or 0,
            day_high=model.day_high,
            day_low=model.day_low,
            trade_count=model.trade_count or 0,
            is_end_of_day=bool(model.is_end_of_day),
        )
