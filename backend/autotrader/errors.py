"""
AutoTrader - Error Taxonomy

Only storage failures are real errors. Short price windows and rejected
trades are ordinary control flow: callers get an empty result or an
``allowed=False`` analysis, and these exceptions exist for the strict
helpers that prefer raising.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autotrader.models import TradeRiskAnalysis


class AutoTraderError(Exception):
    """Base class for all errors raised by the trading core."""


class StorageError(AutoTraderError):
    """Raised when the storage collaborator fails to read or write a record."""

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        message = f"Storage operation '{operation}' failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InsufficientDataError(AutoTraderError):
    """Raised when a price window is shorter than an analysis requires."""

    def __init__(self, token_id: str, available: int, required: int):
        self.token_id = token_id
        self.available = available
        self.required = required
        super().__init__(
            f"Token '{token_id}' has {available} price points, {required} required"
        )


class TradeRejectedError(AutoTraderError):
    """Raised by ``RiskGate.require_trade_allowed`` when a trade is declined."""

    def __init__(self, analysis: "TradeRiskAnalysis"):
        self.analysis = analysis
        super().__init__(analysis.reason or "Trade rejected by risk gate")
