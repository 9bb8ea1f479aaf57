"""
Property-based tests using Hypothesis.

These tests generate random regional books to check invariants:
- Fills stay within [0, quantity] and agree with the trades
- Trades execute at the offer price, never above the bid
- No crossable pair survives a pass
- Deterministic results for the same snapshot
- Settlement is zero-sum and reconciles cleanly
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from hypothesis import given, settings, strategies as st

from gridmatch.core.ledger import Ledger
from gridmatch.core.matcher import match_orders
from gridmatch.core.matching_engine import MatchingEngine
from gridmatch.core.notary import EventLogNotary
from gridmatch.core.order import Offer, Request
from gridmatch.core.order_book import BookSnapshot, offer_priority, request_priority
from gridmatch.core.order_types import OrderStatus
from gridmatch.core.reconciliation import reconcile
from gridmatch.core.store import EventLog, MarketStore
from gridmatch.utils.performance import PerformanceMonitor

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

watt_hours = st.integers(min_value=1, max_value=20000)
quantities = watt_hours.map(lambda n: Decimal(n) / 1000)
prices = st.integers(min_value=5, max_value=40)


@st.composite
def book_strategy(draw):
    """Generate open offers and requests for one region with distinct arrival order."""
    n_offers = draw(st.integers(min_value=0, max_value=15))
    n_requests = draw(st.integers(min_value=0, max_value=15))
    seq = iter(range(1, n_offers + n_requests + 1))

    offers = []
    for i in range(n_offers):
        wh = draw(watt_hours)
        qty = Decimal(wh) / 1000
        filled = Decimal(draw(st.integers(min_value=0, max_value=wh - 1))) / 1000
        s = next(seq)
        offers.append(Offer(
            user_id=f"seller-{i % 4}", region_id="r", price_cents_per_kwh=draw(prices),
            quantity_kwh=qty, filled_kwh=filled,
            created_at=T0 + timedelta(seconds=draw(st.integers(0, 5))), sequence=s,
        ))

    requests = []
    for i in range(n_requests):
        qty = draw(quantities)
        s = next(seq)
        requests.append(Request(
            user_id=f"buyer-{i % 4}", region_id="r", max_price_cents_per_kwh=draw(prices),
            quantity_kwh=qty,
            created_at=T0 + timedelta(seconds=draw(st.integers(0, 5))), sequence=s,
        ))

    return BookSnapshot(
        region_id="r",
        requests=sorted(requests, key=request_priority),
        offers=sorted(offers, key=offer_priority),
    )


@given(book_strategy())
@settings(max_examples=150)
def test_fills_are_bounded_and_consistent(snapshot):
    """Property: final fills equal starting fill plus traded quantity, within bounds."""
    result = match_orders(snapshot)

    traded = defaultdict(Decimal)
    for intent in result.intents:
        assert intent.quantity_kwh > 0
        traded[intent.offer_id] += intent.quantity_kwh
        traded[intent.request_id] += intent.quantity_kwh

    orders = {o.order_id: o for o in list(snapshot.offers) + list(snapshot.requests)}
    for fill in result.fills:
        order = orders[fill.order_id]
        assert fill.filled_kwh == order.filled_kwh + traded[fill.order_id]
        assert 0 <= fill.filled_kwh <= order.quantity_kwh
        assert (fill.status == OrderStatus.FILLED) == (fill.filled_kwh == order.quantity_kwh)


@given(book_strategy())
@settings(max_examples=150)
def test_price_is_ask_and_within_bid(snapshot):
    """Property: every trade prices at its offer and never exceeds the request's max."""
    offers = {o.offer_id: o for o in snapshot.offers}
    requests = {r.request_id: r for r in snapshot.requests}

    for intent in match_orders(snapshot).intents:
        assert intent.price_cents_per_kwh == offers[intent.offer_id].price_cents_per_kwh
        assert intent.price_cents_per_kwh <= requests[intent.request_id].max_price_cents_per_kwh
        assert intent.buyer_id == requests[intent.request_id].user_id
        assert intent.seller_id == offers[intent.offer_id].user_id


@given(book_strategy())
@settings(max_examples=150)
def test_no_crossable_pair_remains(snapshot):
    """Property: after a pass the best remaining bid is below the best remaining ask."""
    result = match_orders(snapshot)
    final = {f.order_id: f for f in result.fills}

    def still_open(order):
        fill = final.get(order.order_id)
        return fill is None or fill.status == OrderStatus.OPEN

    bids = [r.max_price_cents_per_kwh for r in snapshot.requests if still_open(r)]
    asks = [o.price_cents_per_kwh for o in snapshot.offers if still_open(o)]
    if bids and asks:
        assert max(bids) < min(asks)


@given(book_strategy())
@settings(max_examples=100)
def test_deterministic(snapshot):
    """Property: the same snapshot always yields the same trades."""
    first = [i.to_dict() for i in match_orders(snapshot).intents]
    second = [i.to_dict() for i in match_orders(snapshot).intents]

    assert first == second


@given(
    st.lists(st.tuples(prices, quantities), min_size=1, max_size=10),
    st.lists(st.tuples(prices, quantities), min_size=1, max_size=10),
)
@settings(max_examples=40, deadline=None)
def test_settlement_is_zero_sum(offer_specs, request_specs):
    """Property: a pass moves money between wallets without creating any."""
    event_log = EventLog()
    store = MarketStore()
    ledger = Ledger(event_log)
    notary = EventLogNotary(event_log)
    engine = MatchingEngine(store, ledger, notary, performance_monitor=PerformanceMonitor())

    for i, (price, qty) in enumerate(offer_specs):
        store.add_offer(Offer(user_id=f"s{i % 3}", region_id="r", price_cents_per_kwh=price, quantity_kwh=qty))
    for i, (price, qty) in enumerate(request_specs):
        store.add_request(Request(user_id=f"b{i % 3}", region_id="r", max_price_cents_per_kwh=price, quantity_kwh=qty))

    summary = engine.run_match("r")

    assert sum(w.balance_cents for w in ledger.wallets()) == 0
    assert sum(t.amount_cents for t in summary.trades) == sum(
        w.balance_cents for w in ledger.wallets() if w.user_id.startswith("s")
    )
    assert reconcile(store.list_trades(), event_log, ledger).is_clean
    assert engine.run_match("r").executed_trades == 0
    notary.close()
