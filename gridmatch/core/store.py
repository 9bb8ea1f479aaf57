"""
In-memory persistence for orders, trades and the event log.

Every accessor returns copies, so callers can never mutate stored state
except through the store's own update methods.
"""

import copy
import itertools
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union
import logging

from .errors import OrderNotFoundError, OrderStateError
from .order import Offer, Request, Trade, OrderFill, utc_now
from .order_types import EventType, OrderSide, OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventLogEntry:
    """
    One append-only audit record.

    The payload is stored serialized, exactly as written.
    """

    event_id: int
    event_type: EventType
    ref_id: str
    payload: str
    created_at: datetime = field(default_factory=utc_now)

    @property
    def data(self) -> Dict[str, Any]:
        """Parsed payload; an unreadable payload yields an empty dict."""
        try:
            parsed = json.loads(self.payload)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "ref_id": self.ref_id,
            "payload": self.data,
            "created_at": self.created_at.isoformat(),
        }


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class EventLog:
    """
    Append-only event log.

    Entries get increasing integer ids; there is no update or delete.
    """

    def __init__(self):
        self._entries: List[EventLogEntry] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, event_type: EventType, ref_id: str, payload: Dict[str, Any]) -> EventLogEntry:
        """
        Append an entry.

        Args:
            event_type: Entry type
            ref_id: Trade ID or user ID the entry refers to
            payload: JSON-serializable payload

        Returns:
            The stored entry
        """
        serialized = json.dumps(payload, default=_json_default, sort_keys=True)
        with self._lock:
            entry = EventLogEntry(
                event_id=next(self._ids),
                event_type=event_type,
                ref_id=ref_id,
                payload=serialized,
            )
            self._entries.append(entry)
        logger.debug(f"Event {entry.event_id} {event_type.value} ref={ref_id}")
        return entry

    def query(
        self,
        types: Optional[Iterable[EventType]] = None,
        ref_id: Optional[str] = None,
        ref_ids: Optional[Iterable[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[EventLogEntry]:
        """
        Filter entries.

        Args:
            types: Only these event types
            ref_id: Only entries with this reference
            ref_ids: Only entries whose reference is in this collection
            since: Inclusive lower bound on created_at
            until: Exclusive upper bound on created_at
            limit: Maximum number of entries returned
            newest_first: Reverse chronological order

        Returns:
            Matching entries
        """
        type_set = set(types) if types is not None else None
        ref_set = set(ref_ids) if ref_ids is not None else None
        with self._lock:
            entries = list(self._entries)

        result = []
        for entry in reversed(entries) if newest_first else entries:
            if type_set is not None and entry.event_type not in type_set:
                continue
            if ref_id is not None and entry.ref_id != ref_id:
                continue
            if ref_set is not None and entry.ref_id not in ref_set:
                continue
            if since is not None and entry.created_at < since:
                continue
            if until is not None and entry.created_at >= until:
                continue
            result.append(entry)
            if limit is not None and len(result) >= limit:
                break
        return result

    def latest(self, event_type: EventType, ref_id: str) -> Optional[EventLogEntry]:
        found = self.query(types=[event_type], ref_id=ref_id, limit=1, newest_first=True)
        return found[0] if found else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MarketStore:
    """
    Thread-safe in-memory store for offers, requests and trades.

    Trades can be added but never updated or removed.
    """

    def __init__(self):
        self._offers: Dict[str, Offer] = {}
        self._requests: Dict[str, Request] = {}
        self._trades: List[Trade] = []
        self._trade_ids = set()
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()

    # Orders

    def add_offer(self, offer: Offer) -> Offer:
        with self._lock:
            if offer.offer_id in self._offers:
                raise OrderStateError(f"Offer {offer.offer_id} already exists")
            offer.sequence = next(self._sequence)
            self._offers[offer.offer_id] = copy.deepcopy(offer)
            return copy.deepcopy(offer)

    def add_request(self, request: Request) -> Request:
        with self._lock:
            if request.request_id in self._requests:
                raise OrderStateError(f"Request {request.request_id} already exists")
            request.sequence = next(self._sequence)
            self._requests[request.request_id] = copy.deepcopy(request)
            return copy.deepcopy(request)

    def get_offer(self, offer_id: str) -> Offer:
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None:
                raise OrderNotFoundError(f"Offer {offer_id} not found")
            return copy.deepcopy(offer)

    def get_request(self, request_id: str) -> Request:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise OrderNotFoundError(f"Request {request_id} not found")
            return copy.deepcopy(request)

    def list_offers(self, region_id: Optional[str] = None, status: Optional[OrderStatus] = None,
                    user_id: Optional[str] = None) -> List[Offer]:
        with self._lock:
            return [
                copy.deepcopy(o) for o in self._offers.values()
                if (region_id is None or o.region_id == region_id)
                and (status is None or o.status == status)
                and (user_id is None or o.user_id == user_id)
            ]

    def list_requests(self, region_id: Optional[str] = None, status: Optional[OrderStatus] = None,
                      user_id: Optional[str] = None) -> List[Request]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._requests.values()
                if (region_id is None or r.region_id == region_id)
                and (status is None or r.status == status)
                and (user_id is None or r.user_id == user_id)
            ]

    def update_fill(self, fill: OrderFill) -> Union[Offer, Request]:
        """
        Persist the filled quantity and status of one order.

        Raises:
            OrderNotFoundError: Unknown order
            OrderStateError: Fill would decrease, overflow, or re-open a cancelled order
        """
        with self._lock:
            table = self._offers if fill.side == OrderSide.OFFER else self._requests
            order = table.get(fill.order_id)
            if order is None:
                raise OrderNotFoundError(f"{fill.side.value.capitalize()} {fill.order_id} not found")

            if order.status == OrderStatus.CANCELLED:
                raise OrderStateError(f"Cannot fill cancelled {fill.side.value} {fill.order_id}")
            if fill.filled_kwh < order.filled_kwh:
                raise OrderStateError(
                    f"Filled quantity of {fill.order_id} cannot decrease ({order.filled_kwh} -> {fill.filled_kwh})"
                )
            if fill.filled_kwh > order.quantity_kwh:
                raise OrderStateError(
                    f"Filled quantity of {fill.order_id} exceeds total ({fill.filled_kwh} > {order.quantity_kwh})"
                )

            order.filled_kwh = fill.filled_kwh
            order.status = OrderStatus.FILLED if order.is_fully_filled else OrderStatus.OPEN
            return copy.deepcopy(order)

    def cancel_offer(self, offer_id: str) -> Offer:
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None:
                raise OrderNotFoundError(f"Offer {offer_id} not found")
            if offer.status != OrderStatus.OPEN:
                raise OrderStateError(f"Offer {offer_id} is {offer.status.value} and cannot be cancelled")
            offer.status = OrderStatus.CANCELLED
            return copy.deepcopy(offer)

    def cancel_request(self, request_id: str) -> Request:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise OrderNotFoundError(f"Request {request_id} not found")
            if request.status != OrderStatus.OPEN:
                raise OrderStateError(f"Request {request_id} is {request.status.value} and cannot be cancelled")
            request.status = OrderStatus.CANCELLED
            return copy.deepcopy(request)

    # Trades

    def save_trade(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.trade_id in self._trade_ids:
                raise OrderStateError(f"Trade {trade.trade_id} already recorded")
            self._trade_ids.add(trade.trade_id)
            self._trades.append(trade)
        return trade

    def list_trades(self, region_id: Optional[str] = None, user_id: Optional[str] = None,
                    seller_id: Optional[str] = None, buyer_id: Optional[str] = None,
                    since: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[Trade]:
        """Trades, newest first."""
        with self._lock:
            trades = list(self._trades)

        result = []
        for trade in reversed(trades):
            if region_id is not None and trade.region_id != region_id:
                continue
            if user_id is not None and user_id not in (trade.buyer_id, trade.seller_id):
                continue
            if seller_id is not None and trade.seller_id != seller_id:
                continue
            if buyer_id is not None and trade.buyer_id != buyer_id:
                continue
            if since is not None and trade.created_at < since:
                continue
            result.append(trade)
            if limit is not None and len(result) >= limit:
                break
        return result
