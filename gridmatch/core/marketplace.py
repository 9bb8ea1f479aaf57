"""
Order intake and wallet operations around the matching engine.

Posting supply or demand triggers a matching pass for the region when
auto-matching is enabled. Cancellation takes the region lock so it can
never interleave with a pass that already snapshotted the order.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .errors import ForbiddenError, OrderValidationError
from .ledger import Ledger, LedgerTransaction
from .matching_engine import MatchingEngine, MatchSummary
from .notary import create_notary
from .order import (
    KWH_PLACES,
    Offer,
    Request,
    Trade,
    has_kwh_scale,
    start_of_day,
    start_of_week,
    to_decimal,
    utc_now,
)
from .order_types import EventType, OrderStatus
from .store import EventLog, MarketStore
from ..config.settings import Settings, get_settings
from ..utils.performance import PerformanceMonitor

logger = logging.getLogger(__name__)


def _total_kwh(trades: Iterable[Trade]) -> Decimal:
    return sum((t.quantity_kwh for t in trades), Decimal('0'))


class Marketplace:
    """
    Entry point used by the API layer.
    """

    def __init__(self, engine: MatchingEngine, settings: Optional[Settings] = None):
        """
        Initialize the marketplace.

        Args:
            engine: Matching engine for all regions
            settings: Validation bounds and auto-match flag
        """
        self.engine = engine
        self.store = engine.store
        self.ledger = engine.ledger
        self.event_log = engine.event_log
        self.settings = settings or get_settings()

    # Validation

    def _check_price(self, price: Any, name: str) -> int:
        if isinstance(price, bool) or not isinstance(price, int):
            raise OrderValidationError(f"{name} must be an integer number of cents")
        if price < self.settings.min_price_cents:
            raise OrderValidationError(f"{name} too small. Minimum: {self.settings.min_price_cents}")
        if price > self.settings.max_price_cents:
            raise OrderValidationError(f"{name} too large. Maximum: {self.settings.max_price_cents}")
        return price

    def _check_quantity(self, quantity: Any) -> Decimal:
        if isinstance(quantity, bool):
            raise OrderValidationError("Quantity must be a number")
        try:
            qty = to_decimal(quantity)
        except (InvalidOperation, ValueError, TypeError):
            raise OrderValidationError(f"Invalid quantity format: {quantity}")
        if not qty.is_finite() or qty <= 0:
            raise OrderValidationError("Quantity must be positive")
        if not has_kwh_scale(qty):
            raise OrderValidationError(f"Quantity must have at most {KWH_PLACES} decimal places")
        if qty < self.settings.min_quantity_kwh:
            raise OrderValidationError(f"Quantity too small. Minimum: {self.settings.min_quantity_kwh}")
        if qty > self.settings.max_quantity_kwh:
            raise OrderValidationError(f"Quantity too large. Maximum: {self.settings.max_quantity_kwh}")
        return qty

    def _check_reading(self, value: Any, name: str) -> Decimal:
        if isinstance(value, bool):
            raise OrderValidationError(f"{name} must be a number")
        try:
            reading = to_decimal(value)
        except (InvalidOperation, ValueError, TypeError):
            raise OrderValidationError(f"{name} must be a number")
        if not reading.is_finite() or reading < 0:
            raise OrderValidationError(f"{name} must be non-negative")
        if not has_kwh_scale(reading):
            raise OrderValidationError(f"{name} must have at most {KWH_PLACES} decimal places")
        return reading

    def _region(self, region_id: Optional[str]) -> str:
        return region_id or self.settings.default_region

    def _auto_match(self, region_id: str) -> Optional[MatchSummary]:
        if not self.settings.auto_match:
            return None
        return self.engine.run_match(region_id)

    # Orders

    def post_offer(self, user_id: str, price_cents_per_kwh: int, quantity_kwh: Any,
                   region_id: Optional[str] = None) -> Tuple[Offer, Optional[MatchSummary]]:
        """
        Post a sell offer and run a matching pass for its region.

        Returns:
            The stored offer (as posted) and the pass summary, if one ran
        """
        if not user_id:
            raise OrderValidationError("User ID is required")
        offer = Offer(
            user_id=user_id,
            region_id=self._region(region_id),
            price_cents_per_kwh=self._check_price(price_cents_per_kwh, "Price"),
            quantity_kwh=self._check_quantity(quantity_kwh),
        )
        offer = self.store.add_offer(offer)
        self.engine.market_logger.log_order_post(
            offer.offer_id, "offer", offer.region_id, user_id, offer.price_cents_per_kwh, str(offer.quantity_kwh)
        )
        return offer, self._auto_match(offer.region_id)

    def post_request(self, user_id: str, max_price_cents_per_kwh: int, quantity_kwh: Any,
                     region_id: Optional[str] = None) -> Tuple[Request, Optional[MatchSummary]]:
        """
        Post a buy request and run a matching pass for its region.

        Returns:
            The stored request (as posted) and the pass summary, if one ran
        """
        if not user_id:
            raise OrderValidationError("User ID is required")
        request = Request(
            user_id=user_id,
            region_id=self._region(region_id),
            max_price_cents_per_kwh=self._check_price(max_price_cents_per_kwh, "Max price"),
            quantity_kwh=self._check_quantity(quantity_kwh),
        )
        request = self.store.add_request(request)
        self.engine.market_logger.log_order_post(
            request.request_id, "request", request.region_id, user_id,
            request.max_price_cents_per_kwh, str(request.quantity_kwh)
        )
        return request, self._auto_match(request.region_id)

    def cancel_offer(self, user_id: str, offer_id: str) -> Offer:
        offer = self.store.get_offer(offer_id)
        if offer.user_id != user_id:
            raise ForbiddenError(f"Offer {offer_id} belongs to another user")
        with self.engine.region_locks.lock(offer.region_id):
            cancelled = self.store.cancel_offer(offer_id)
        self.engine.market_logger.log_order_cancel(offer_id, "offer", user_id)
        return cancelled

    def cancel_request(self, user_id: str, request_id: str) -> Request:
        request = self.store.get_request(request_id)
        if request.user_id != user_id:
            raise ForbiddenError(f"Request {request_id} belongs to another user")
        with self.engine.region_locks.lock(request.region_id):
            cancelled = self.store.cancel_request(request_id)
        self.engine.market_logger.log_order_cancel(request_id, "request", user_id)
        return cancelled

    def run_match(self, region_id: Optional[str] = None) -> MatchSummary:
        return self.engine.run_match(self._region(region_id))

    # Pricing and surplus

    def set_price(self, user_id: str, price_cents_per_kwh: int) -> Dict[str, Any]:
        """Record the user's current selling price."""
        price = self._check_price(price_cents_per_kwh, "Price")
        entry = self.event_log.append(EventType.PRICE_UPDATE, user_id, {
            "user_id": user_id,
            "price_cents": price,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        })
        return {"price_cents": price, "event_id": entry.event_id}

    def current_price(self, user_id: str) -> Optional[int]:
        """
        Selling price for new surplus.

        Latest price update, else the newest open offer, else the last sale.
        """
        event = self.event_log.latest(EventType.PRICE_UPDATE, user_id)
        if event is not None and event.data.get("price_cents") is not None:
            return int(event.data["price_cents"])

        offers = self.store.list_offers(user_id=user_id, status=OrderStatus.OPEN)
        if offers:
            newest = max(offers, key=lambda o: (o.created_at, o.sequence))
            return newest.price_cents_per_kwh

        sales = self.store.list_trades(seller_id=user_id, limit=1)
        if sales:
            return sales[0].price_cents_per_kwh
        return None

    def record_surplus(self, user_id: str, generated_kwh: Any, local_load_kwh: Any,
                       region_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Log a generation reading and offer any surplus at the current price.

        Raises:
            OrderValidationError: Bad readings, a surplus outside the
                quantity bounds, or no price set yet. Nothing is logged.
        """
        generated = self._check_reading(generated_kwh, "Generated reading")
        load = self._check_reading(local_load_kwh, "Load reading")

        surplus = generated - load if generated > load else Decimal('0')

        price = self.current_price(user_id)
        if price is None:
            raise OrderValidationError("Set a selling price before recording surplus.")
        if surplus > 0:
            self._check_quantity(surplus)

        region = self._region(region_id)
        entry = self.event_log.append(EventType.SURPLUS_ENTRY, user_id, {
            "user_id": user_id,
            "region_id": region,
            "generated_kwh": generated,
            "local_load_kwh": load,
            "surplus_kwh": surplus,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        })

        offer = None
        summary = None
        if surplus > 0:
            offer, summary = self.post_offer(user_id, price, surplus, region)
        if summary is None and self.settings.auto_match:
            summary = self.engine.run_match(region)

        return {
            "surplus_kwh": str(surplus),
            "price_cents": price,
            "event_id": entry.event_id,
            "offer_id": offer.offer_id if offer else None,
            "match_summary": summary.to_dict() if summary else None,
        }

    # Demand

    def _purchases(self, user_id: str, since: datetime) -> List[Trade]:
        return self.store.list_trades(buyer_id=user_id, since=since)

    def record_meter_reading(self, user_id: str, reading_kwh: Any, notes: Optional[str] = None,
                             region_id: Optional[str] = None,
                             now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Log a buyer's consumption reading and request what today's trades
        have not covered yet.

        The request is priced at the operator's current price. Without a
        price the reading is still logged and no request is posted.

        Args:
            user_id: Buyer
            reading_kwh: Consumption so far today
            notes: Free text stored with the reading
            region_id: Region (default region if omitted)
            now: Clock override

        Raises:
            OrderValidationError: Bad reading, or a shortfall outside the
                quantity bounds. Nothing is logged.
        """
        reading = self._check_reading(reading_kwh, "Meter reading")
        now = now or utc_now()
        region = self._region(region_id)

        purchased = _total_kwh(self._purchases(user_id, start_of_day(now)))
        needed = reading - purchased if reading > purchased else Decimal('0')

        price = self.current_price(self.settings.operator_user_id)
        wanted = needed > 0 and price is not None
        if wanted:
            self._check_quantity(needed)

        entry = self.event_log.append(EventType.METER_READING, user_id, {
            "user_id": user_id,
            "region_id": region,
            "reading_kwh": reading,
            "purchased_today_kwh": purchased,
            "needed_kwh": needed,
            "notes": notes,
            "recorded_at": now.isoformat(),
        })

        request = None
        summary = None
        if wanted:
            request, summary = self.post_request(user_id, price, needed, region)
        if summary is None and self.settings.auto_match:
            summary = self.engine.run_match(region)

        return {
            "event_id": entry.event_id,
            "requested_kwh": str(needed),
            "request_id": request.request_id if request else None,
            "current_price_cents": price,
            "match_summary": summary.to_dict() if summary else None,
        }

    # Views

    def weekly_balance(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        What a buyer owes for the current week.

        Purchases are trades bought since Monday; payments are wallet
        credits since Monday. Debt carried into the week (a negative
        balance at Monday 00:00) is due on top.
        """
        week_start = start_of_week(now or utc_now())
        purchases = self._purchases(user_id, week_start)
        payments = self.event_log.query(types=[EventType.PAYMENT_CREDIT], ref_id=user_id, since=week_start)

        wallet = self.ledger.find_wallet(user_id)
        balance = wallet.balance_cents if wallet else 0
        before_week = [e for e in self.ledger.history(user_id) if e.created_at < week_start]
        opening = int(before_week[-1].data.get("balance_cents", 0)) if before_week else 0

        purchases_cents = sum(t.amount_cents for t in purchases)
        payments_cents = sum(int(e.data.get("amount_cents", 0)) for e in payments)
        net_due = purchases_cents - payments_cents - min(opening, 0)

        return {
            "week_start": week_start.isoformat(),
            "purchases": {"kwh": str(_total_kwh(purchases)), "amount_cents": purchases_cents},
            "payments": {"amount_cents": payments_cents, "count": len(payments)},
            "opening_balance_cents": opening,
            "wallet_balance_cents": balance,
            "balance_owed_cents": -balance if balance < 0 else 0,
            "remaining_due_cents": max(0, net_due),
            "generated_at": utc_now().isoformat(),
        }

    def operator_summary(self, user_id: str, region_id: Optional[str] = None,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
        """Seller dashboard: price, today's surplus, this week's and today's sales."""
        now = now or utc_now()
        today = start_of_day(now)
        week_sales = self.store.list_trades(seller_id=user_id, since=start_of_week(now))
        today_sales = [t for t in week_sales if t.created_at >= today]

        surplus_today = self.event_log.query(types=[EventType.SURPLUS_ENTRY], ref_id=user_id, since=today)
        recent = self.event_log.query(types=[EventType.SURPLUS_ENTRY], ref_id=user_id, limit=5, newest_first=True)

        return {
            "region_id": self._region(region_id),
            "current_price_cents": self.current_price(user_id),
            "surplus_today_kwh": str(sum(
                (to_decimal(e.data.get("surplus_kwh", "0")) for e in surplus_today), Decimal('0')
            )),
            "energy_sold_week_kwh": str(_total_kwh(week_sales)),
            "energy_sold_week_value_cents": sum(t.amount_cents for t in week_sales),
            "todays_sales": {
                "kwh": str(_total_kwh(today_sales)),
                "amount_cents": sum(t.amount_cents for t in today_sales),
            },
            "recent_surplus": [
                {
                    "event_id": e.event_id,
                    "generated_kwh": e.data.get("generated_kwh"),
                    "local_load_kwh": e.data.get("local_load_kwh"),
                    "surplus_kwh": e.data.get("surplus_kwh"),
                    "recorded_at": e.created_at.isoformat(),
                }
                for e in recent
            ],
            "generated_at": utc_now().isoformat(),
        }

    def buyer_summary(self, user_id: str, region_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """Buyer dashboard: buy price, today's and this week's purchases, balance owed."""
        now = now or utc_now()
        today = start_of_day(now)
        week_purchases = self._purchases(user_id, start_of_week(now))
        today_purchases = [t for t in week_purchases if t.created_at >= today]

        wallet = self.ledger.find_wallet(user_id)
        balance = wallet.balance_cents if wallet else 0
        readings = self.event_log.query(types=[EventType.METER_READING], ref_id=user_id, limit=5, newest_first=True)

        return {
            "region_id": self._region(region_id),
            "current_buy_price_cents": self.current_price(self.settings.operator_user_id),
            "energy_purchased_today": {
                "kwh": str(_total_kwh(today_purchases)),
                "amount_cents": sum(t.amount_cents for t in today_purchases),
            },
            "weekly_kwh": str(_total_kwh(week_purchases)),
            "weekly_spend_cents": sum(t.amount_cents for t in week_purchases),
            "wallet_balance_cents": balance,
            "balance_owed_cents": -balance if balance < 0 else 0,
            "recent_meter_readings": [
                {"event_id": e.event_id, "reading_kwh": e.data.get("reading_kwh"), "noted_at": e.created_at.isoformat()}
                for e in readings
            ],
            "generated_at": utc_now().isoformat(),
        }

    # Wallets

    def top_up(self, user_id: str, amount_cents: int) -> LedgerTransaction:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise OrderValidationError("Top-up amount must be a positive integer number of cents")
        reference = f"topup_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
        return self.ledger.credit(user_id, amount_cents, reference)


def create_marketplace(settings: Optional[Settings] = None,
                       audit_logger: Optional[logging.Logger] = None) -> Marketplace:
    """
    Wire store, ledger, notary and engine from settings.

    Args:
        settings: Configuration (global settings by default)
        audit_logger: Optional audit trail for settled trades
    """
    settings = settings or get_settings()
    event_log = EventLog()
    store = MarketStore()
    ledger = Ledger(event_log)
    notary = create_notary(
        settings.notary_mode,
        event_log,
        url=settings.notary_url,
        api_key=settings.notary_api_key,
        timeout_seconds=settings.notary_timeout_seconds,
    )
    engine = MatchingEngine(store, ledger, notary, performance_monitor=PerformanceMonitor(), audit_logger=audit_logger)
    logger.info(f"Marketplace created (notary={settings.notary_mode}, auto_match={settings.auto_match})")
    return Marketplace(engine, settings)
