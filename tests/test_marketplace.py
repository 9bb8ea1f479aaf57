"""
Tests for order intake, pricing, surplus and wallet top-ups.
"""

import unittest
from datetime import timedelta
from decimal import Decimal

from gridmatch.config.settings import Settings
from gridmatch.core.errors import ForbiddenError, OrderStateError, OrderValidationError
from gridmatch.core.marketplace import create_marketplace
from gridmatch.core.order import utc_now
from gridmatch.core.order_types import EventType, OrderStatus


def make_settings(**overrides):
    settings = Settings()
    settings.default_region = "region-1"
    settings.auto_match = True
    settings.notary_mode = "mock"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


class TestMarketplace(unittest.TestCase):

    def setUp(self):
        self.market = create_marketplace(make_settings())

    def tearDown(self):
        self.market.engine.notary.close()

    def test_posting_triggers_match(self):
        offer, first = self.market.post_offer("alice", 10, "5")
        request, second = self.market.post_request("bob", 12, "5")

        self.assertEqual(first.executed_trades, 0)
        self.assertEqual(second.executed_trades, 1)
        self.assertEqual(offer.region_id, "region-1")
        self.assertEqual(self.market.store.get_offer(offer.offer_id).status, OrderStatus.FILLED)

    def test_auto_match_disabled(self):
        market = create_marketplace(make_settings(auto_match=False))
        market.post_offer("alice", 10, "5")
        _, summary = market.post_request("bob", 12, "5")

        self.assertIsNone(summary)
        self.assertEqual(market.run_match().executed_trades, 1)
        market.engine.notary.close()

    def test_input_bounds(self):
        with self.assertRaises(OrderValidationError):
            self.market.post_offer("alice", 0, "5")
        with self.assertRaises(OrderValidationError):
            self.market.post_offer("alice", 10.5, "5")
        with self.assertRaises(OrderValidationError):
            self.market.post_request("bob", 10, "-1")
        with self.assertRaises(OrderValidationError):
            self.market.post_request("bob", 10, "abc")
        with self.assertRaises(OrderValidationError):
            self.market.post_request("bob", 10, "0.0001")
        with self.assertRaises(OrderValidationError):
            self.market.post_offer("", 10, "1")
        self.assertEqual(self.market.store.list_offers(), [])

    def test_cancel_by_owner_only(self):
        offer, _ = self.market.post_offer("alice", 20, "5")

        with self.assertRaises(ForbiddenError):
            self.market.cancel_offer("mallory", offer.offer_id)

        cancelled = self.market.cancel_offer("alice", offer.offer_id)
        self.assertEqual(cancelled.status, OrderStatus.CANCELLED)

        # Cancelled supply never trades
        _, summary = self.market.post_request("bob", 25, "5")
        self.assertEqual(summary.executed_trades, 0)

    def test_filled_order_cannot_be_cancelled(self):
        self.market.post_offer("alice", 10, "5")
        request, _ = self.market.post_request("bob", 12, "5")

        with self.assertRaises(OrderStateError):
            self.market.cancel_request("bob", request.request_id)

    def test_price_then_surplus_posts_offer(self):
        self.market.set_price("alice", 14)

        result = self.market.record_surplus("alice", "12.5", "9")

        self.assertEqual(result["surplus_kwh"], "3.5")
        self.assertEqual(result["price_cents"], 14)
        offer = self.market.store.get_offer(result["offer_id"])
        self.assertEqual(offer.price_cents_per_kwh, 14)
        self.assertEqual(offer.quantity_kwh, Decimal('3.5'))
        entry = self.market.event_log.latest(EventType.SURPLUS_ENTRY, "alice")
        self.assertEqual(entry.data["surplus_kwh"], "3.5")

    def test_surplus_without_price_rejected(self):
        with self.assertRaises(OrderValidationError):
            self.market.record_surplus("alice", "5", "1")
        self.assertEqual(len(self.market.event_log.query(types=[EventType.SURPLUS_ENTRY])), 0)

    def test_no_surplus_still_matches(self):
        self.market.set_price("alice", 10)

        result = self.market.record_surplus("alice", "2", "5")

        self.assertEqual(result["surplus_kwh"], "0")
        self.assertIsNone(result["offer_id"])
        self.assertEqual(result["match_summary"]["executed_trades"], 0)

    def test_surplus_sells_to_waiting_buyer(self):
        self.market.post_request("bob", 20, "2")
        self.market.set_price("alice", 15)

        result = self.market.record_surplus("alice", "4", "1")

        self.assertEqual(result["match_summary"]["executed_trades"], 1)
        self.assertEqual(self.market.ledger.get_balance("alice"), 30)

    def test_current_price_fallbacks(self):
        self.assertIsNone(self.market.current_price("alice"))

        self.market.post_offer("alice", 17, "1")
        self.assertEqual(self.market.current_price("alice"), 17)

        self.market.post_request("bob", 20, "1")
        self.assertEqual(self.market.current_price("alice"), 17)

        self.market.set_price("alice", 11)
        self.assertEqual(self.market.current_price("alice"), 11)

    def test_top_up(self):
        tx = self.market.top_up("bob", 500)

        self.assertEqual(tx.balance_cents, 500)
        self.assertTrue(tx.reference.startswith("topup_"))
        with self.assertRaises(OrderValidationError):
            self.market.top_up("bob", -5)

    def test_over_precise_quantity_never_reaches_the_book(self):
        with self.assertRaises(OrderValidationError):
            self.market.post_offer("alice", 10, "1.0000000000000000000000000009")
        with self.assertRaises(OrderValidationError):
            self.market.post_request("bob", 12, "2.0005")

        self.market.post_request("bob", 12, "2")
        for _ in range(3):
            self.assertEqual(self.market.run_match().executed_trades, 0)

        self.assertEqual(self.market.store.list_offers(), [])
        self.assertEqual(self.market.store.list_trades(), [])

    def test_surplus_outside_bounds_is_not_logged(self):
        market = create_marketplace(make_settings(min_quantity_kwh=Decimal('0.5'), max_quantity_kwh=Decimal('10')))
        market.set_price("alice", 12)

        with self.assertRaises(OrderValidationError):
            market.record_surplus("alice", "1.2", "1")
        with self.assertRaises(OrderValidationError):
            market.record_surplus("alice", "20", "1")
        with self.assertRaises(OrderValidationError):
            market.record_surplus("alice", "5.0001", "1")

        self.assertEqual(market.event_log.query(types=[EventType.SURPLUS_ENTRY]), [])
        self.assertEqual(market.store.list_offers(), [])
        market.engine.notary.close()


class TestDemandAndViews(unittest.TestCase):

    def setUp(self):
        self.market = create_marketplace(make_settings(operator_user_id="op"))
        self.market.set_price("op", 15)
        self.market.post_offer("op", 15, "10")

    def tearDown(self):
        self.market.engine.notary.close()

    def test_meter_reading_requests_todays_shortfall(self):
        first = self.market.record_meter_reading("bob", "4", notes="morning")

        self.assertEqual(first["requested_kwh"], "4")
        self.assertEqual(first["current_price_cents"], 15)
        self.assertEqual(first["match_summary"]["executed_trades"], 1)
        request = self.market.store.get_request(first["request_id"])
        self.assertEqual(request.max_price_cents_per_kwh, 15)
        self.assertEqual(request.status, OrderStatus.FILLED)

        second = self.market.record_meter_reading("bob", "6")
        self.assertEqual(second["requested_kwh"], "2")

        third = self.market.record_meter_reading("bob", "5")
        self.assertEqual(third["requested_kwh"], "0")
        self.assertIsNone(third["request_id"])

        readings = self.market.event_log.query(types=[EventType.METER_READING], ref_id="bob")
        self.assertEqual(len(readings), 3)
        self.assertEqual(readings[0].data["notes"], "morning")
        self.assertEqual(readings[2].data["purchased_today_kwh"], "6")
        self.assertEqual(self.market.ledger.get_balance("bob"), -90)

    def test_meter_reading_without_operator_price(self):
        market = create_marketplace(make_settings(operator_user_id="nobody"))

        result = market.record_meter_reading("bob", "4")

        self.assertIsNone(result["current_price_cents"])
        self.assertIsNone(result["request_id"])
        self.assertEqual(market.store.list_requests(), [])
        self.assertEqual(len(market.event_log.query(types=[EventType.METER_READING])), 1)
        market.engine.notary.close()

    def test_meter_reading_validation(self):
        for bad in ("-1", "abc", "1.0005", True):
            with self.assertRaises(OrderValidationError):
                self.market.record_meter_reading("bob", bad)

        market = create_marketplace(make_settings(operator_user_id="op", max_quantity_kwh=Decimal('5')))
        market.set_price("op", 15)
        with self.assertRaises(OrderValidationError):
            market.record_meter_reading("bob", "8")
        self.assertEqual(market.event_log.query(types=[EventType.METER_READING]), [])
        market.engine.notary.close()

    def test_weekly_balance(self):
        self.market.record_meter_reading("bob", "4")
        self.market.top_up("bob", 20)

        balance = self.market.weekly_balance("bob")

        self.assertEqual(balance["purchases"], {"kwh": "4", "amount_cents": 60})
        self.assertEqual(balance["payments"], {"amount_cents": 20, "count": 1})
        self.assertEqual(balance["opening_balance_cents"], 0)
        self.assertEqual(balance["wallet_balance_cents"], -40)
        self.assertEqual(balance["balance_owed_cents"], 40)
        self.assertEqual(balance["remaining_due_cents"], 40)

    def test_weekly_balance_carries_debt_into_next_week(self):
        self.market.record_meter_reading("bob", "4")

        balance = self.market.weekly_balance("bob", now=utc_now() + timedelta(days=7))

        self.assertEqual(balance["purchases"]["amount_cents"], 0)
        self.assertEqual(balance["opening_balance_cents"], -60)
        self.assertEqual(balance["remaining_due_cents"], 60)

    def test_weekly_balance_for_unknown_user_opens_no_wallet(self):
        balance = self.market.weekly_balance("carol")

        self.assertEqual(balance["wallet_balance_cents"], 0)
        self.assertEqual(balance["remaining_due_cents"], 0)
        self.assertIsNone(self.market.ledger.find_wallet("carol"))

    def test_operator_summary(self):
        self.market.set_price("alice", 12)
        self.market.record_surplus("alice", "5", "2")
        self.market.post_request("bob", 20, "2")

        summary = self.market.operator_summary("alice")

        self.assertEqual(summary["current_price_cents"], 12)
        self.assertEqual(summary["surplus_today_kwh"], "3")
        self.assertEqual(summary["energy_sold_week_kwh"], "2")
        self.assertEqual(summary["energy_sold_week_value_cents"], 24)
        self.assertEqual(summary["todays_sales"], {"kwh": "2", "amount_cents": 24})
        self.assertEqual(len(summary["recent_surplus"]), 1)
        self.assertEqual(summary["recent_surplus"][0]["generated_kwh"], "5")

    def test_buyer_summary(self):
        self.market.record_meter_reading("bob", "3")

        summary = self.market.buyer_summary("bob")

        self.assertEqual(summary["current_buy_price_cents"], 15)
        self.assertEqual(summary["energy_purchased_today"], {"kwh": "3", "amount_cents": 45})
        self.assertEqual(summary["weekly_spend_cents"], 45)
        self.assertEqual(summary["balance_owed_cents"], 45)
        self.assertEqual(summary["recent_meter_readings"][0]["reading_kwh"], "3")


if __name__ == '__main__':
    unittest.main()
