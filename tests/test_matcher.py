"""
Tests for the pure crossing function.

Books are built directly as snapshots, so no store is involved.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from gridmatch.core.errors import MatchingInvariantError
from gridmatch.core.matcher import match_orders
from gridmatch.core.order import Offer, Request
from gridmatch.core.order_book import BookSnapshot, offer_priority, request_priority
from gridmatch.core.order_types import OrderSide, OrderStatus

T0 = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


def make_offer(price, qty, filled='0', minutes=0, seq=0, user="seller", region="region-1", **kwargs):
    return Offer(
        user_id=user,
        region_id=region,
        price_cents_per_kwh=price,
        quantity_kwh=Decimal(str(qty)),
        filled_kwh=Decimal(str(filled)),
        created_at=T0 + timedelta(minutes=minutes),
        sequence=seq,
        **kwargs
    )


def make_request(max_price, qty, filled='0', minutes=0, seq=0, user="buyer", region="region-1", **kwargs):
    return Request(
        user_id=user,
        region_id=region,
        max_price_cents_per_kwh=max_price,
        quantity_kwh=Decimal(str(qty)),
        filled_kwh=Decimal(str(filled)),
        created_at=T0 + timedelta(minutes=minutes),
        sequence=seq,
        **kwargs
    )


def snapshot(requests, offers, region="region-1"):
    return BookSnapshot(
        region_id=region,
        requests=sorted(requests, key=request_priority),
        offers=sorted(offers, key=offer_priority),
    )


class TestMatchOrders(unittest.TestCase):
    """Crossing behaviour on small books."""

    def test_full_cross_at_ask_price(self):
        offer = make_offer(10, 5)
        request = make_request(12, 5)

        result = match_orders(snapshot([request], [offer]))

        self.assertEqual(len(result.intents), 1)
        intent = result.intents[0]
        self.assertEqual(intent.price_cents_per_kwh, 10)
        self.assertEqual(intent.quantity_kwh, Decimal('5'))
        self.assertEqual(intent.amount_cents, 50)
        self.assertEqual(intent.buyer_id, "buyer")
        self.assertEqual(intent.seller_id, "seller")
        self.assertEqual(intent.offer_fill.status, OrderStatus.FILLED)
        self.assertEqual(intent.request_fill.status, OrderStatus.FILLED)

    def test_higher_bid_matches_first(self):
        offer = make_offer(10, 10)
        late_low = make_request(10, 4, minutes=5, seq=3, user="b")
        early_high = make_request(15, 3, minutes=0, seq=2, user="c")

        result = match_orders(snapshot([late_low, early_high], [offer]))

        self.assertEqual([i.request_id for i in result.intents], [early_high.request_id, late_low.request_id])
        self.assertEqual([i.quantity_kwh for i in result.intents], [Decimal('3'), Decimal('4')])
        self.assertTrue(all(i.price_cents_per_kwh == 10 for i in result.intents))

        offer_fill = result.intents[-1].offer_fill
        self.assertEqual(offer_fill.filled_kwh, Decimal('7'))
        self.assertEqual(offer_fill.status, OrderStatus.OPEN)

    def test_no_cross_when_bid_below_ask(self):
        result = match_orders(snapshot([make_request(15, 5)], [make_offer(20, 5)]))

        self.assertEqual(result.intents, [])
        self.assertEqual(result.fills, [])

    def test_time_priority_among_equal_prices(self):
        first = make_offer(10, 5, minutes=0, seq=1, user="s1")
        second = make_offer(10, 5, minutes=1, seq=2, user="s2")
        request = make_request(10, 8, minutes=2, seq=3)

        result = match_orders(snapshot([request], [second, first]))

        self.assertEqual(len(result.intents), 2)
        self.assertEqual(result.intents[0].offer_id, first.offer_id)
        self.assertEqual(result.intents[0].quantity_kwh, Decimal('5'))
        self.assertEqual(result.intents[0].offer_fill.status, OrderStatus.FILLED)
        self.assertEqual(result.intents[1].offer_id, second.offer_id)
        self.assertEqual(result.intents[1].quantity_kwh, Decimal('3'))
        self.assertEqual(result.intents[1].offer_fill.status, OrderStatus.OPEN)

    def test_sequence_breaks_identical_timestamps(self):
        a = make_offer(10, 1, seq=7, user="later")
        b = make_offer(10, 1, seq=4, user="earlier")

        result = match_orders(snapshot([make_request(10, 1)], [a, b]))

        self.assertEqual(result.intents[0].seller_id, "earlier")

    def test_expensive_ask_is_skipped_for_current_bid(self):
        request = make_request(12, 5)
        cheap = make_offer(10, 2, seq=1)
        pricey = make_offer(14, 5, seq=2)

        result = match_orders(snapshot([request], [cheap, pricey]))

        self.assertEqual(len(result.intents), 1)
        self.assertEqual(result.intents[0].offer_id, cheap.offer_id)
        self.assertEqual(result.intents[0].request_fill.filled_kwh, Decimal('2'))
        self.assertEqual(result.intents[0].request_fill.status, OrderStatus.OPEN)

    def test_partially_filled_orders_use_remaining_quantity(self):
        offer = make_offer(10, 5, filled='4')
        request = make_request(10, 3, filled='1')

        result = match_orders(snapshot([request], [offer]))

        self.assertEqual(len(result.intents), 1)
        self.assertEqual(result.intents[0].quantity_kwh, Decimal('1'))
        self.assertEqual(result.intents[0].offer_fill.filled_kwh, Decimal('5'))
        self.assertEqual(result.intents[0].request_fill.filled_kwh, Decimal('2'))

    def test_exact_tie_advances_both_sides(self):
        requests = [make_request(12, 2, seq=1, user="b1"), make_request(11, 3, seq=2, user="b2")]
        offers = [make_offer(10, 2, seq=3, user="s1"), make_offer(11, 3, seq=4, user="s2")]

        result = match_orders(snapshot(requests, offers))

        pairs = [(i.buyer_id, i.seller_id, i.quantity_kwh, i.price_cents_per_kwh) for i in result.intents]
        self.assertEqual(pairs, [("b1", "s1", Decimal('2'), 10), ("b2", "s2", Decimal('3'), 11)])

    def test_amount_rounds_half_up(self):
        result = match_orders(snapshot([make_request(15, '0.5')], [make_offer(13, '0.5')]))

        # 0.5 kWh x 13 = 6.5 cents
        self.assertEqual(result.intents[0].amount_cents, 7)

    def test_fills_report_final_state_per_order(self):
        offer = make_offer(10, 10)
        requests = [make_request(12, 3, seq=1), make_request(11, 3, seq=2)]

        result = match_orders(snapshot(requests, [offer]))

        by_id = {f.order_id: f for f in result.fills}
        self.assertEqual(len(by_id), 3)
        self.assertEqual(by_id[offer.offer_id].filled_kwh, Decimal('6'))
        self.assertEqual(by_id[offer.offer_id].side, OrderSide.OFFER)
        self.assertEqual(result.total_quantity_kwh, Decimal('6'))

    def test_snapshot_is_not_mutated(self):
        offer = make_offer(10, 5)
        request = make_request(12, 5)
        snap = snapshot([request], [offer])

        match_orders(snap)

        self.assertEqual(snap.offers[0].filled_kwh, Decimal('0'))
        self.assertEqual(snap.requests[0].status, OrderStatus.OPEN)

    def test_same_snapshot_same_result(self):
        snap = snapshot(
            [make_request(12, 4, seq=1), make_request(11, 2, seq=2)],
            [make_offer(10, 3, seq=3), make_offer(11, 5, seq=4)],
        )

        first = [i.to_dict() for i in match_orders(snap).intents]
        second = [i.to_dict() for i in match_orders(snap).intents]

        self.assertEqual(first, second)


class TestSnapshotInvariants(unittest.TestCase):
    """Inconsistent snapshots abort before producing anything."""

    def test_foreign_region_order_rejected(self):
        snap = snapshot([make_request(12, 5)], [make_offer(10, 5, region="region-2")])

        with self.assertRaises(MatchingInvariantError):
            match_orders(snap)

    def test_non_open_order_rejected(self):
        cancelled = make_offer(10, 5, status=OrderStatus.CANCELLED)

        with self.assertRaises(MatchingInvariantError):
            match_orders(snapshot([make_request(12, 5)], [cancelled]))

    def test_fully_filled_open_order_is_a_zero_quantity_crossing(self):
        offer = make_offer(10, 5)
        # Simulate stale bookkeeping behind validation's back
        offer.filled_kwh = Decimal('5')

        with self.assertRaises(MatchingInvariantError):
            match_orders(snapshot([make_request(12, 5)], [offer]))

    def test_quantity_beyond_decimal_precision_rejected(self):
        offer = make_offer(10, 1)
        # 29 significant digits: quantity - filled rounds up in the default context
        offer.quantity_kwh = Decimal('1.0000000000000000000000000009')

        with self.assertRaises(MatchingInvariantError):
            match_orders(snapshot([make_request(12, 2)], [offer]))


if __name__ == '__main__':
    unittest.main()
