"""Error taxonomy for the metrics engine."""
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Union

Number = Union[Decimal, int]


class JournalError(Exception):
    """Base class for all trade journal errors."""


class ValidationError(JournalError):
    """A trade record is malformed.

    Raised at the store boundary and by the orchestrator's trade filter.
    The orchestrator drops the offending record and keeps going.
    """

    def __init__(self, message: str, trade_id: Optional[str] = None):
        super().__init__(message)
        self.trade_id = trade_id


class FetchError(JournalError):
    """A quote or series source failed (transport error, non-200, bad body)."""

    def __init__(
        self,
        message: str,
        source: str = "unknown",
        symbols: Optional[Iterable[str]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.source = source
        self.symbols: List[str] = sorted(symbols) if symbols else []
        self.retryable = retryable


class ComputationGuardError(JournalError):
    """A calculation hit a division-by-zero shaped input.

    Never escapes a calculator; see ``safe_divide``.
    """


def checked_divide(numerator: Number, denominator: Number) -> Decimal:
    """Divide two numbers, raising ComputationGuardError on a zero denominator."""
    denominator = Decimal(denominator)
    if denominator == 0:
        raise ComputationGuardError(f"division of {numerator} by zero")
    try:
        return Decimal(numerator) / denominator
    except InvalidOperation as e:
        raise ComputationGuardError(str(e)) from e


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Divide two numbers, resolving guarded inputs to Decimal("0")."""
    try:
        return checked_divide(numerator, denominator)
    except ComputationGuardError:
        return Decimal("0")
