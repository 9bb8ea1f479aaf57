"""
Input validation utilities for the API layer.

Each validator returns a tuple whose first two items are
(is_valid, error_message); parsing validators add the parsed value.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional, Tuple
import logging

from ..core.order import KWH_PLACES, has_kwh_scale
from ..core.order_types import OrderStatus

logger = logging.getLogger(__name__)

REGION_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')
USER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.@:-]{1,128}$')

PERIODS = ("all", "current", "previous")
MAX_NOTES_LENGTH = 500


def validate_region(region_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate region identifier format.

    Args:
        region_id: Region identifier to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not region_id:
        return False, "Region cannot be empty"

    if not isinstance(region_id, str):
        return False, "Region must be a string"

    if not REGION_PATTERN.match(region_id):
        return False, f"Invalid region format: {region_id}. Letters, digits, '-' and '_' only"

    return True, None


def validate_user_id(user_id: Any) -> Tuple[bool, Optional[str]]:
    if not user_id:
        return False, "Missing X-User-Id header"

    if not isinstance(user_id, str) or not USER_ID_PATTERN.match(user_id):
        return False, "Invalid user ID"

    return True, None


def validate_quantity(quantity: Any, name: str = "Quantity") -> Tuple[bool, Optional[str], Optional[Decimal]]:
    """
    Validate an energy quantity in kWh.

    Returns:
        Tuple of (is_valid, error_message, parsed_quantity)
    """
    if quantity is None:
        return False, f"{name} is required", None

    if isinstance(quantity, bool):
        return False, f"Invalid {name.lower()} format: {quantity}", None

    try:
        qty = Decimal(str(quantity))
    except (InvalidOperation, ValueError, TypeError):
        return False, f"Invalid {name.lower()} format: {quantity}", None

    if not qty.is_finite():
        return False, f"Invalid {name.lower()} format: {quantity}", None

    if qty <= 0:
        return False, f"{name} must be positive", None

    if not has_kwh_scale(qty):
        return False, f"{name} must have at most {KWH_PLACES} decimal places", None

    return True, None, qty


def validate_reading(value: Any, name: str) -> Tuple[bool, Optional[str], Optional[Decimal]]:
    """Like validate_quantity, but zero is allowed."""
    if value is None:
        return False, f"{name} is required", None

    if isinstance(value, bool):
        return False, f"Invalid {name} format: {value}", None

    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return False, f"Invalid {name} format: {value}", None

    if not parsed.is_finite() or parsed < 0:
        return False, f"{name} must be non-negative", None

    if not has_kwh_scale(parsed):
        return False, f"{name} must have at most {KWH_PLACES} decimal places", None

    return True, None, parsed


def validate_cents(value: Any, name: str = "Price") -> Tuple[bool, Optional[str], Optional[int]]:
    """
    Validate a positive integer amount of cents.

    Returns:
        Tuple of (is_valid, error_message, parsed_value)
    """
    if value is None:
        return False, f"{name} is required", None

    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be an integer number of cents", None

    if value <= 0:
        return False, f"{name} must be positive", None

    return True, None, value


def validate_offer_request(data: Dict[str, Any]) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
    """
    Validate a new offer.

    Expected body: {"price_cents_per_kwh": int, "quantity_kwh": number, "region_id"?: str}
    """
    is_valid, error, price = validate_cents(data.get("price_cents_per_kwh"), "price_cents_per_kwh")
    if not is_valid:
        return False, error, None

    is_valid, error, quantity = validate_quantity(data.get("quantity_kwh"), "quantity_kwh")
    if not is_valid:
        return False, error, None

    region_id = data.get("region_id")
    if region_id is not None:
        is_valid, error = validate_region(region_id)
        if not is_valid:
            return False, error, None

    return True, None, {
        "price_cents_per_kwh": price,
        "quantity_kwh": quantity,
        "region_id": region_id,
    }


def validate_request_request(data: Dict[str, Any]) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
    """
    Validate a new buy request.

    Expected body: {"max_price_cents_per_kwh": int, "quantity_kwh": number, "region_id"?: str}
    """
    is_valid, error, price = validate_cents(data.get("max_price_cents_per_kwh"), "max_price_cents_per_kwh")
    if not is_valid:
        return False, error, None

    is_valid, error, quantity = validate_quantity(data.get("quantity_kwh"), "quantity_kwh")
    if not is_valid:
        return False, error, None

    region_id = data.get("region_id")
    if region_id is not None:
        is_valid, error = validate_region(region_id)
        if not is_valid:
            return False, error, None

    return True, None, {
        "max_price_cents_per_kwh": price,
        "quantity_kwh": quantity,
        "region_id": region_id,
    }


def validate_surplus_request(data: Dict[str, Any]) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
    """Expected body: {"generated_kwh": number, "local_load_kwh": number, "region_id"?: str}"""
    is_valid, error, generated = validate_reading(data.get("generated_kwh"), "generated_kwh")
    if not is_valid:
        return False, error, None

    is_valid, error, load = validate_reading(data.get("local_load_kwh"), "local_load_kwh")
    if not is_valid:
        return False, error, None

    region_id = data.get("region_id")
    if region_id is not None:
        is_valid, error = validate_region(region_id)
        if not is_valid:
            return False, error, None

    return True, None, {"generated_kwh": generated, "local_load_kwh": load, "region_id": region_id}


def validate_status(status: Any) -> Tuple[bool, Optional[str], Optional[OrderStatus]]:
    if status is None:
        return True, None, OrderStatus.OPEN

    try:
        return True, None, OrderStatus(str(status).upper())
    except ValueError:
        return False, f"Invalid status: {status}. Must be one of: {[s.value for s in OrderStatus]}", None


def validate_limit(limit: Any, default: int, minimum: int, maximum: int) -> Tuple[bool, Optional[str], Optional[int]]:
    """
    Validate a list limit, clamping it into [minimum, maximum].
    """
    if limit is None:
        return True, None, default

    try:
        value = int(limit)
    except (ValueError, TypeError):
        return False, f"Invalid limit format: {limit}. Must be an integer", None

    return True, None, max(minimum, min(maximum, value))


def validate_period(period: Any) -> Tuple[bool, Optional[str], Optional[str]]:
    if period is None:
        return True, None, "all"

    if period not in PERIODS:
        return False, f"Invalid period: {period}. Must be one of: {list(PERIODS)}", None

    return True, None, period


def validate_meter_reading_request(data: Dict[str, Any]) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
    """Expected body: {"reading_kwh": number, "notes"?: str, "region_id"?: str}"""
    is_valid, error, reading = validate_reading(data.get("reading_kwh"), "reading_kwh")
    if not is_valid:
        return False, error, None

    notes = data.get("notes")
    if notes is not None:
        if not isinstance(notes, str):
            return False, "notes must be a string", None
        if len(notes) > MAX_NOTES_LENGTH:
            return False, f"notes too long. Maximum: {MAX_NOTES_LENGTH} characters", None

    region_id = data.get("region_id")
    if region_id is not None:
        is_valid, error = validate_region(region_id)
        if not is_valid:
            return False, error, None

    return True, None, {"reading_kwh": reading, "notes": notes, "region_id": region_id}
