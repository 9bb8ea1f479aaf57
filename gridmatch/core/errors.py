"""
Exception hierarchy for the energy marketplace.

Input errors are raised before anything reaches the matching core.
Settlement and invariant errors are raised from inside a matching pass
and are fatal for that pass.
"""

from typing import Any, Optional


class MarketError(Exception):
    """Base class for all marketplace errors."""


class OrderValidationError(MarketError):
    """Order input rejected before it reaches the order book."""


class OrderNotFoundError(MarketError):
    """Referenced offer or request does not exist."""


class OrderStateError(MarketError):
    """Operation not allowed in the order's current status."""


class ForbiddenError(MarketError):
    """User is not allowed to act on the referenced order."""


class LedgerError(MarketError):
    """Wallet operation could not be applied."""


class MatchingInvariantError(MarketError):
    """
    Snapshot bookkeeping produced an impossible crossing.

    Raised before any write of the pass; no trade is persisted.
    """


class SettlementError(MarketError):
    """
    Ledger failure while settling a trade.

    The trade record and any ledger mutation already applied are left in
    place for reconciliation.
    """

    def __init__(self, trade_id: str, message: str, summary: Optional[Any] = None):
        super().__init__(f"Settlement failed for trade {trade_id}: {message}")
        self.trade_id = trade_id
        self.summary = summary
