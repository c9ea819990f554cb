"""Interfaces of the external stores the metrics engine reads and writes."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tradejournal.core.models import CapitalSnapshot, Trade


class TradeStore(ABC):
    """Row store of trade records."""

    @abstractmethod
    async def list_trades(self, user_id: str) -> List[Trade]:
        """All trades of a user."""

    @abstractmethod
    async def update_trade(self, trade_id: str, fields: Dict[str, Any]) -> None:
        """Persist recomputed fields onto a trade record."""


class SettingsStore(ABC):
    """Per-user settings."""

    @abstractmethod
    async def get_starting_cash(self, user_id: str) -> Optional[Decimal]:
        """Configured starting capital, or None if the user has not set one."""


class CapitalLedger(ABC):
    """Append-only sequence of capital snapshots per user."""

    @abstractmethod
    async def append_snapshot(self, snapshot: CapitalSnapshot) -> None:
        """Append a snapshot. A snapshot with an existing id replaces it."""

    @abstractmethod
    async def list_snapshots(self, user_id: str) -> List[CapitalSnapshot]:
        """Snapshots of a user, oldest first."""

    async def latest_snapshot(self, user_id: str) -> Optional[CapitalSnapshot]:
        """Most recent snapshot of a user."""
        snapshots = await self.list_snapshots(user_id)
        return snapshots[-1] if snapshots else None
