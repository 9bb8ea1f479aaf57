"""
Core marketplace components.

This module contains the order and trade data structures, the matcher,
settlement and reconciliation logic.
"""

from .order import Offer, Request, Trade, OrderFill
from .order_types import OrderStatus, OrderSide, EventType
from .order_book import OrderBook, BookSnapshot
from .matcher import match_orders, MatchResult, TradeIntent
from .matching_engine import MatchingEngine, MatchSummary
from .ledger import Ledger
from .notary import Receipt, create_notary
from .marketplace import Marketplace, create_marketplace
from .reconciliation import reconcile

__all__ = [
    "Offer",
    "Request",
    "Trade",
    "OrderFill",
    "OrderStatus",
    "OrderSide",
    "EventType",
    "OrderBook",
    "BookSnapshot",
    "match_orders",
    "MatchResult",
    "TradeIntent",
    "MatchingEngine",
    "MatchSummary",
    "Ledger",
    "Receipt",
    "create_notary",
    "Marketplace",
    "create_marketplace",
    "reconcile",
]
