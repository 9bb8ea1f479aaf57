"""
Offer, Request and Trade data structures for the energy marketplace.

Money is always an integer number of cents. Energy quantities are
Decimal kWh so that partial fills add up exactly.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any

from .order_types import OrderSide, OrderStatus, TradeStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Monday 00:00 of the week containing now, same timezone."""
    return start_of_day(now) - timedelta(days=now.weekday())


def to_decimal(value: Any) -> Decimal:
    """Convert a number or numeric string to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# Quantities are whole watt-hours
KWH_PLACES = 3


def has_kwh_scale(value: Decimal) -> bool:
    """True when value carries no digits below one watt-hour."""
    if not value.is_finite():
        return False
    _, digits, exponent = value.as_tuple()
    extra = -KWH_PLACES - exponent
    if extra <= 0:
        return True
    return not any(digits[-extra:])


def compute_amount_cents(quantity_kwh: Decimal, price_cents_per_kwh: int) -> int:
    """
    Trade value in cents, rounded half-up to the nearest cent.

    Args:
        quantity_kwh: Executed quantity
        price_cents_per_kwh: Execution price

    Returns:
        Integer amount in cents
    """
    value = to_decimal(quantity_kwh) * Decimal(price_cents_per_kwh)
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class FillTracking:
    """Fill arithmetic shared by offers and requests."""

    side: OrderSide

    @property
    def remaining_kwh(self) -> Decimal:
        """Quantity still open for matching."""
        return self.quantity_kwh - self.filled_kwh

    @property
    def is_fully_filled(self) -> bool:
        return self.filled_kwh >= self.quantity_kwh

    @property
    def is_partially_filled(self) -> bool:
        return self.filled_kwh > 0 and not self.is_fully_filled

    @property
    def is_open(self) -> bool:
        return self.status == OrderStatus.OPEN

    def _validate_fill(self) -> None:
        if not self.user_id:
            raise ValueError("User ID cannot be empty")

        if not self.region_id:
            raise ValueError("Region cannot be empty")

        if self.quantity_kwh <= 0:
            raise ValueError(f"Quantity must be positive, got: {self.quantity_kwh}")

        if not has_kwh_scale(self.quantity_kwh) or not has_kwh_scale(self.filled_kwh):
            raise ValueError(f"Quantities must be whole Wh (at most {KWH_PLACES} decimal places), got: {self.quantity_kwh}")

        if self.filled_kwh < 0:
            raise ValueError("Filled quantity cannot be negative")

        if self.filled_kwh > self.quantity_kwh:
            raise ValueError("Filled quantity cannot exceed total quantity")

        if self.status == OrderStatus.FILLED and not self.is_fully_filled:
            raise ValueError("Order marked FILLED before its quantity was filled")

        if self.status == OrderStatus.OPEN and self.is_fully_filled:
            raise ValueError("Fully filled order cannot be OPEN")


@dataclass
class Offer(FillTracking):
    """
    A resting sell order (ask side).

    The seller's price is the execution price of every trade struck
    against this offer.
    """

    offer_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    region_id: str = ""

    price_cents_per_kwh: int = 0
    quantity_kwh: Decimal = Decimal('0')
    filled_kwh: Decimal = Decimal('0')

    status: OrderStatus = OrderStatus.OPEN
    created_at: datetime = field(default_factory=utc_now)

    # Assigned by the store; breaks created_at ties deterministically
    sequence: int = 0

    side = OrderSide.OFFER

    def __post_init__(self):
        self.quantity_kwh = to_decimal(self.quantity_kwh)
        self.filled_kwh = to_decimal(self.filled_kwh)
        self._validate()

    def _validate(self) -> None:
        """
        Validate offer parameters.

        Raises:
            ValueError: If offer parameters are invalid
        """
        if isinstance(self.price_cents_per_kwh, bool) or not isinstance(self.price_cents_per_kwh, int):
            raise ValueError(f"Price must be an integer number of cents, got: {self.price_cents_per_kwh!r}")

        if self.price_cents_per_kwh <= 0:
            raise ValueError(f"Price must be positive, got: {self.price_cents_per_kwh}")

        self._validate_fill()

    @property
    def order_id(self) -> str:
        return self.offer_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert offer to dictionary for serialization."""
        return {
            "offer_id": self.offer_id,
            "user_id": self.user_id,
            "region_id": self.region_id,
            "price_cents_per_kwh": self.price_cents_per_kwh,
            "quantity_kwh": str(self.quantity_kwh),
            "filled_kwh": str(self.filled_kwh),
            "remaining_kwh": str(self.remaining_kwh),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Offer':
        """Create offer from dictionary."""
        return cls(
            offer_id=data.get("offer_id", str(uuid.uuid4())),
            user_id=data["user_id"],
            region_id=data["region_id"],
            price_cents_per_kwh=int(data["price_cents_per_kwh"]),
            quantity_kwh=to_decimal(data["quantity_kwh"]),
            filled_kwh=to_decimal(data.get("filled_kwh", "0")),
            status=OrderStatus(data.get("status", "OPEN")),
            created_at=_parse_timestamp(data["created_at"]) if data.get("created_at") else utc_now(),
        )


@dataclass
class Request(FillTracking):
    """
    A resting buy order (bid side).

    max_price_cents_per_kwh is the most the buyer will pay; trades execute
    at the offer's price, which is never above it.
    """

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    region_id: str = ""

    max_price_cents_per_kwh: int = 0
    quantity_kwh: Decimal = Decimal('0')
    filled_kwh: Decimal = Decimal('0')

    status: OrderStatus = OrderStatus.OPEN
    created_at: datetime = field(default_factory=utc_now)
    sequence: int = 0

    side = OrderSide.REQUEST

    def __post_init__(self):
        self.quantity_kwh = to_decimal(self.quantity_kwh)
        self.filled_kwh = to_decimal(self.filled_kwh)
        self._validate()

    def _validate(self) -> None:
        """
        Validate request parameters.

        Raises:
            ValueError: If request parameters are invalid
        """
        if isinstance(self.max_price_cents_per_kwh, bool) or not isinstance(self.max_price_cents_per_kwh, int):
            raise ValueError(f"Max price must be an integer number of cents, got: {self.max_price_cents_per_kwh!r}")

        if self.max_price_cents_per_kwh <= 0:
            raise ValueError(f"Max price must be positive, got: {self.max_price_cents_per_kwh}")

        self._validate_fill()

    @property
    def order_id(self) -> str:
        return self.request_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert request to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "region_id": self.region_id,
            "max_price_cents_per_kwh": self.max_price_cents_per_kwh,
            "quantity_kwh": str(self.quantity_kwh),
            "filled_kwh": str(self.filled_kwh),
            "remaining_kwh": str(self.remaining_kwh),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Request':
        """Create request from dictionary."""
        return cls(
            request_id=data.get("request_id", str(uuid.uuid4())),
            user_id=data["user_id"],
            region_id=data["region_id"],
            max_price_cents_per_kwh=int(data["max_price_cents_per_kwh"]),
            quantity_kwh=to_decimal(data["quantity_kwh"]),
            filled_kwh=to_decimal(data.get("filled_kwh", "0")),
            status=OrderStatus(data.get("status", "OPEN")),
            created_at=_parse_timestamp(data["created_at"]) if data.get("created_at") else utc_now(),
        )


@dataclass(frozen=True)
class Trade:
    """
    Settlement record of one crossing.

    Trades are created once, already SETTLED, and never change afterwards.
    """

    trade_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    region_id: str = ""

    buyer_id: str = ""
    seller_id: str = ""
    offer_id: str = ""
    request_id: str = ""

    price_cents_per_kwh: int = 0
    quantity_kwh: Decimal = Decimal('0')
    amount_cents: int = 0

    status: TradeStatus = TradeStatus.SETTLED
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        """Validate trade after initialization."""
        self._validate()

    def _validate(self) -> None:
        """
        Validate trade parameters.

        Raises:
            ValueError: If trade parameters are invalid
        """
        if not self.region_id:
            raise ValueError("Region cannot be empty")

        if not self.buyer_id or not self.seller_id:
            raise ValueError("Buyer and seller must both be set")

        if not self.offer_id or not self.request_id:
            raise ValueError("Offer ID and request ID must both be set")

        if self.price_cents_per_kwh <= 0:
            raise ValueError(f"Price must be positive, got: {self.price_cents_per_kwh}")

        if self.quantity_kwh <= 0:
            raise ValueError(f"Quantity must be positive, got: {self.quantity_kwh}")

        if self.amount_cents != compute_amount_cents(self.quantity_kwh, self.price_cents_per_kwh):
            raise ValueError(f"Amount {self.amount_cents} does not equal price x quantity")

    def receipt_summary(self) -> Dict[str, Any]:
        """Payload handed to the receipt notary."""
        return {
            "region_id": self.region_id,
            "price_cents_per_kwh": self.price_cents_per_kwh,
            "quantity_kwh": str(self.quantity_kwh),
            "amount_cents": self.amount_cents,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert trade to dictionary for serialization."""
        return {
            "trade_id": self.trade_id,
            "region_id": self.region_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "offer_id": self.offer_id,
            "request_id": self.request_id,
            "price_cents_per_kwh": self.price_cents_per_kwh,
            "quantity_kwh": str(self.quantity_kwh),
            "amount_cents": self.amount_cents,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Trade':
        """Create trade from dictionary."""
        return cls(
            trade_id=data.get("trade_id", str(uuid.uuid4())),
            region_id=data["region_id"],
            buyer_id=data["buyer_id"],
            seller_id=data["seller_id"],
            offer_id=data["offer_id"],
            request_id=data["request_id"],
            price_cents_per_kwh=int(data["price_cents_per_kwh"]),
            quantity_kwh=to_decimal(data["quantity_kwh"]),
            amount_cents=int(data["amount_cents"]),
            status=TradeStatus(data.get("status", "SETTLED")),
            created_at=_parse_timestamp(data["created_at"]) if data.get("created_at") else utc_now(),
        )


@dataclass(frozen=True)
class OrderFill:
    """Fill state to persist for one order after a crossing."""

    order_id: str
    side: OrderSide
    filled_kwh: Decimal
    status: OrderStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "filled_kwh": str(self.filled_kwh),
            "status": self.status.value,
        }


def fill_status(filled_kwh: Decimal, quantity_kwh: Decimal) -> OrderStatus:
    """FILLED exactly when the fill reached the total quantity, else OPEN."""
    return OrderStatus.FILLED if filled_kwh >= quantity_kwh else OrderStatus.OPEN
