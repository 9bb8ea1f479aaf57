"""
Enumerations shared by orders, trades, the ledger and the event log.
"""

from enum import Enum


class OrderStatus(Enum):
    """
    Lifecycle of an offer or request.

    - OPEN: resting in the book, possibly partially filled
    - FILLED: filled quantity reached the total quantity
    - CANCELLED: withdrawn by its owner; never re-opens
    """
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


class OrderSide(Enum):
    """
    Book side of an order.

    - OFFER: seller-posted ask
    - REQUEST: buyer-posted bid
    """
    OFFER = "offer"
    REQUEST = "request"


class TradeStatus(Enum):
    """A trade is final once it exists."""
    SETTLED = "SETTLED"


class LedgerDirection(Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class EventType(Enum):
    """Event log entry types."""
    WALLET_OPENED = "WALLET_OPENED"
    PAYMENT_DEBIT = "PAYMENT_DEBIT"
    PAYMENT_CREDIT = "PAYMENT_CREDIT"
    CHAIN_RECEIPT = "CHAIN_RECEIPT"
    CHAIN_RECEIPT_MOCK = "CHAIN_RECEIPT_MOCK"
    CHAIN_ERROR = "CHAIN_ERROR"
    SURPLUS_ENTRY = "SURPLUS_ENTRY"
    METER_READING = "METER_READING"
    PRICE_UPDATE = "PRICE_UPDATE"


PAYMENT_EVENTS = (EventType.PAYMENT_DEBIT, EventType.PAYMENT_CREDIT)

RECEIPT_EVENTS = (
    EventType.CHAIN_RECEIPT,
    EventType.CHAIN_RECEIPT_MOCK,
    EventType.CHAIN_ERROR,
)
