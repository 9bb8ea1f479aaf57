"""
Order book access with price-time priority.

Reads open offers and requests of one region in matching priority and
writes fill state back after a crossing. Offers and requests of different
regions are never mixed.
"""

from dataclasses import dataclass, field
from typing import List, Union
import logging

from .order import Offer, Request, OrderFill
from .order_types import OrderStatus
from .store import MarketStore

logger = logging.getLogger(__name__)


def request_priority(request: Request) -> tuple:
    """Highest willingness to pay first, then arrival order."""
    return (-request.max_price_cents_per_kwh, request.created_at, request.sequence)


def offer_priority(offer: Offer) -> tuple:
    """Cheapest supply first, then arrival order."""
    return (offer.price_cents_per_kwh, offer.created_at, offer.sequence)


@dataclass(frozen=True)
class BookSnapshot:
    """
    Immutable view of one region's open orders at a point in time.

    requests and offers are already in matching priority.
    """

    region_id: str
    requests: List[Request] = field(default_factory=list)
    offers: List[Offer] = field(default_factory=list)

    @property
    def best_bid(self):
        return self.requests[0].max_price_cents_per_kwh if self.requests else None

    @property
    def best_ask(self):
        return self.offers[0].price_cents_per_kwh if self.offers else None

    def is_crossable(self) -> bool:
        """True when the best bid reaches the best ask."""
        return bool(self.requests and self.offers and self.best_bid >= self.best_ask)


class OrderBook:
    """
    Region-scoped accessor over the market store.
    """

    def __init__(self, store: MarketStore):
        """
        Initialize the accessor.

        Args:
            store: Backing store for orders
        """
        self.store = store

    def open_requests(self, region_id: str) -> List[Request]:
        """Open requests of a region, highest max price first."""
        requests = self.store.list_requests(region_id=region_id, status=OrderStatus.OPEN)
        return sorted(requests, key=request_priority)

    def open_offers(self, region_id: str) -> List[Offer]:
        """Open offers of a region, lowest price first."""
        offers = self.store.list_offers(region_id=region_id, status=OrderStatus.OPEN)
        return sorted(offers, key=offer_priority)

    def snapshot(self, region_id: str) -> BookSnapshot:
        """
        Snapshot both sides of a region's book.

        Args:
            region_id: Region to read

        Returns:
            BookSnapshot holding copies of the open orders
        """
        snapshot = BookSnapshot(
            region_id=region_id,
            requests=self.open_requests(region_id),
            offers=self.open_offers(region_id),
        )
        logger.debug(
            f"Snapshot {region_id}: {len(snapshot.requests)} requests, {len(snapshot.offers)} offers, "
            f"best bid {snapshot.best_bid}, best ask {snapshot.best_ask}"
        )
        return snapshot

    def apply_fill(self, fill: OrderFill) -> Union[Offer, Request]:
        """
        Persist the fill state of one order.

        Args:
            fill: New cumulative fill and status

        Returns:
            The updated order
        """
        updated = self.store.update_fill(fill)
        logger.debug(f"Applied fill {fill.order_id}: filled={updated.filled_kwh} status={updated.status.value}")
        return updated
