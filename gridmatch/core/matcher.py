"""
Greedy price-time crossing of a region's book.

match_orders is a pure function of a BookSnapshot: it reads nothing from
storage and writes nothing, so the same snapshot always yields the same
trades. Remaining quantities are tracked locally for the duration of the
pass.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List
import logging

from .errors import MatchingInvariantError
from .order import OrderFill, compute_amount_cents, fill_status
from .order_book import BookSnapshot
from .order_types import OrderSide, OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeIntent:
    """
    One crossing produced by the matcher, not yet persisted.

    request_fill and offer_fill are the cumulative fill states of the two
    orders right after this crossing.
    """

    region_id: str
    buyer_id: str
    seller_id: str
    offer_id: str
    request_id: str
    price_cents_per_kwh: int
    quantity_kwh: Decimal
    amount_cents: int
    request_fill: OrderFill
    offer_fill: OrderFill

    def to_dict(self) -> Dict[str, object]:
        return {
            "region_id": self.region_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "offer_id": self.offer_id,
            "request_id": self.request_id,
            "price_cents_per_kwh": self.price_cents_per_kwh,
            "quantity_kwh": str(self.quantity_kwh),
            "amount_cents": self.amount_cents,
        }


@dataclass(frozen=True)
class MatchResult:
    """Trade intents in execution order plus the final fill of every touched order."""

    region_id: str
    intents: List[TradeIntent] = field(default_factory=list)
    fills: List[OrderFill] = field(default_factory=list)

    @property
    def total_quantity_kwh(self) -> Decimal:
        return sum((intent.quantity_kwh for intent in self.intents), Decimal('0'))


def _check_snapshot(snapshot: BookSnapshot) -> None:
    for order in list(snapshot.requests) + list(snapshot.offers):
        if order.region_id != snapshot.region_id:
            raise MatchingInvariantError(
                f"{order.side.value} {order.order_id} belongs to {order.region_id}, not {snapshot.region_id}"
            )
        if order.status != OrderStatus.OPEN:
            raise MatchingInvariantError(f"{order.side.value} {order.order_id} is {order.status.value}, not OPEN")
        if order.filled_kwh > order.quantity_kwh:
            raise MatchingInvariantError(f"{order.side.value} {order.order_id} is overfilled")
        if order.filled_kwh + order.remaining_kwh != order.quantity_kwh:
            raise MatchingInvariantError(
                f"{order.side.value} {order.order_id} quantity {order.quantity_kwh} cannot be tracked exactly"
            )


def match_orders(snapshot: BookSnapshot) -> MatchResult:
    """
    Cross the snapshot's requests against its offers.

    Requests are walked in descending max price, offers in ascending price.
    While the current bid reaches the current ask, the smaller remaining
    quantity trades at the ask's price. An ask above the current bid is
    skipped. The pass stops when either side is exhausted.

    Args:
        snapshot: Region book in matching priority

    Returns:
        MatchResult with intents and final fills

    Raises:
        MatchingInvariantError: If the snapshot or the bookkeeping is inconsistent
    """
    _check_snapshot(snapshot)

    requests = snapshot.requests
    offers = snapshot.offers

    remaining: Dict[str, Decimal] = {}
    filled: Dict[str, Decimal] = {}
    for order in list(requests) + list(offers):
        remaining[order.order_id] = order.remaining_kwh
        filled[order.order_id] = order.filled_kwh

    intents: List[TradeIntent] = []
    touched: Dict[str, OrderFill] = {}

    i = 0
    j = 0
    while i < len(requests) and j < len(offers):
        bid = requests[i]
        ask = offers[j]

        if bid.max_price_cents_per_kwh < ask.price_cents_per_kwh:
            j += 1
            continue

        quantity = min(remaining[bid.request_id], remaining[ask.offer_id])
        if quantity <= 0:
            raise MatchingInvariantError(
                f"Zero-quantity crossing between request {bid.request_id} and offer {ask.offer_id}"
            )

        price = ask.price_cents_per_kwh

        remaining[bid.request_id] -= quantity
        remaining[ask.offer_id] -= quantity
        filled[bid.request_id] += quantity
        filled[ask.offer_id] += quantity

        if remaining[bid.request_id] < 0 or remaining[ask.offer_id] < 0:
            raise MatchingInvariantError(f"Negative remaining after crossing {bid.request_id} / {ask.offer_id}")

        for order in (bid, ask):
            if filled[order.order_id] > order.quantity_kwh:
                raise MatchingInvariantError(
                    f"{order.side.value} {order.order_id} would be filled past its quantity "
                    f"({filled[order.order_id]} > {order.quantity_kwh})"
                )

        request_fill = OrderFill(
            order_id=bid.request_id,
            side=OrderSide.REQUEST,
            filled_kwh=filled[bid.request_id],
            status=fill_status(filled[bid.request_id], bid.quantity_kwh),
        )
        offer_fill = OrderFill(
            order_id=ask.offer_id,
            side=OrderSide.OFFER,
            filled_kwh=filled[ask.offer_id],
            status=fill_status(filled[ask.offer_id], ask.quantity_kwh),
        )
        touched[bid.request_id] = request_fill
        touched[ask.offer_id] = offer_fill

        intents.append(TradeIntent(
            region_id=snapshot.region_id,
            buyer_id=bid.user_id,
            seller_id=ask.user_id,
            offer_id=ask.offer_id,
            request_id=bid.request_id,
            price_cents_per_kwh=price,
            quantity_kwh=quantity,
            amount_cents=compute_amount_cents(quantity, price),
            request_fill=request_fill,
            offer_fill=offer_fill,
        ))

        # Both cursors move on an exact tie
        if remaining[bid.request_id] == 0:
            i += 1
        if remaining[ask.offer_id] == 0:
            j += 1

    if intents:
        logger.debug(f"Matched {len(intents)} crossings in {snapshot.region_id}")

    return MatchResult(
        region_id=snapshot.region_id,
        intents=intents,
        fills=list(touched.values()),
    )
