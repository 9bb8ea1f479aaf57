"""
Tests for API input validators.
"""

import unittest
from decimal import Decimal

from gridmatch.api.validators import (
    validate_cents,
    validate_limit,
    validate_meter_reading_request,
    validate_offer_request,
    validate_period,
    validate_quantity,
    validate_region,
    validate_request_request,
    validate_status,
    validate_surplus_request,
    validate_user_id,
)
from gridmatch.core.order_types import OrderStatus


class TestValidators(unittest.TestCase):

    def test_region(self):
        self.assertTrue(validate_region("region-1")[0])
        self.assertFalse(validate_region("")[0])
        self.assertFalse(validate_region("two words")[0])
        self.assertFalse(validate_region(7)[0])

    def test_user_id(self):
        self.assertTrue(validate_user_id("alice@example.com")[0])
        self.assertEqual(validate_user_id(None), (False, "Missing X-User-Id header"))

    def test_quantity(self):
        self.assertEqual(validate_quantity("1.25"), (True, None, Decimal('1.25')))
        self.assertEqual(validate_quantity(3)[2], Decimal('3'))
        for bad in (None, "0", "-1", "NaN", "Infinity", "abc", True):
            self.assertFalse(validate_quantity(bad)[0], bad)

    def test_quantity_limited_to_watt_hours(self):
        self.assertEqual(validate_quantity("1.500")[2], Decimal('1.500'))
        ok, error, _ = validate_quantity("1.0000000000000000000000000009", "quantity_kwh")

        self.assertFalse(ok)
        self.assertIn("decimal places", error)
        self.assertFalse(validate_surplus_request({"generated_kwh": "0.0001", "local_load_kwh": 0})[0])

    def test_cents(self):
        self.assertEqual(validate_cents(15), (True, None, 15))
        for bad in (None, 0, -3, 1.5, "15", False):
            self.assertFalse(validate_cents(bad)[0], bad)

    def test_offer_body(self):
        ok, error, data = validate_offer_request({"price_cents_per_kwh": 10, "quantity_kwh": "2.5"})

        self.assertTrue(ok)
        self.assertIsNone(error)
        self.assertEqual(data, {"price_cents_per_kwh": 10, "quantity_kwh": Decimal('2.5'), "region_id": None})

    def test_request_body(self):
        ok, error, _ = validate_request_request({"price_cents_per_kwh": 10, "quantity_kwh": "1"})

        self.assertFalse(ok)
        self.assertIn("max_price_cents_per_kwh", error)

    def test_surplus_body_allows_zero(self):
        ok, _, data = validate_surplus_request({"generated_kwh": 0, "local_load_kwh": "1.5"})

        self.assertTrue(ok)
        self.assertEqual(data["generated_kwh"], Decimal('0'))
        self.assertFalse(validate_surplus_request({"generated_kwh": "-1", "local_load_kwh": 0})[0])

    def test_meter_reading_body(self):
        ok, _, data = validate_meter_reading_request({"reading_kwh": "7.5", "notes": "peak"})

        self.assertTrue(ok)
        self.assertEqual(data, {"reading_kwh": Decimal('7.5'), "notes": "peak", "region_id": None})
        self.assertTrue(validate_meter_reading_request({"reading_kwh": 0})[0])
        self.assertFalse(validate_meter_reading_request({})[0])
        self.assertFalse(validate_meter_reading_request({"reading_kwh": "1", "notes": 5})[0])
        self.assertFalse(validate_meter_reading_request({"reading_kwh": "1", "notes": "x" * 501})[0])

    def test_status(self):
        self.assertEqual(validate_status(None)[2], OrderStatus.OPEN)
        self.assertEqual(validate_status("cancelled")[2], OrderStatus.CANCELLED)
        self.assertFalse(validate_status("PENDING")[0])

    def test_limit_clamped(self):
        self.assertEqual(validate_limit(None, 100, 10, 200)[2], 100)
        self.assertEqual(validate_limit("5", 100, 10, 200)[2], 10)
        self.assertEqual(validate_limit("999", 100, 10, 200)[2], 200)
        self.assertFalse(validate_limit("many", 100, 10, 200)[0])

    def test_period(self):
        self.assertEqual(validate_period(None)[2], "all")
        self.assertEqual(validate_period("previous")[2], "previous")
        self.assertFalse(validate_period("last-year")[0])


if __name__ == '__main__':
    unittest.main()
