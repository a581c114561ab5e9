"""
Exception hierarchy for the arbitrage pipeline.

Source and computation failures are recovered inside the poll loop;
only ValidationError is meant to reach the caller of the control surface.
"""

from typing import Any, Dict, Optional


class ArbitrageError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class SourceError(ArbitrageError):
    """An exchange source could not answer."""

    def __init__(
        self,
        message: str,
        exchange: Optional[str] = None,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.exchange = exchange
        self.symbol = symbol


class PriceUnavailable(SourceError):
    pass


class OrderBookUnavailable(SourceError):
    pass


class ValidationError(ArbitrageError):
    """Rejected request at the control-surface boundary."""

    pass


class PersistenceError(ArbitrageError):
    """The state store could not read or replace the state document."""

    pass


class ExecutionError(ArbitrageError):
    pass
