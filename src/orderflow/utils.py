"""Utility functions for orderflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from .errors import AmbiguousLineItemError, InvalidInputError, LineItemNotFoundError

if TYPE_CHECKING:
    from .models import Order, OrderLineItem

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a 2-place Decimal.

    Floats are converted through their string form so 999.99 stays 999.99.

    Raises:
        InvalidInputError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInputError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidInputError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal) -> int:
    """Convert a money amount to integer minor units (paise)."""
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount: int) -> Decimal:
    return to_money(Decimal(amount) / 100)


def generate_order_id() -> str:
    """Human readable order id, e.g. ORD-20260119-1A2B3C4D."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"ORD-{stamp}-{uuid.uuid4().hex[:8].upper()}"


def generate_line_id() -> str:
    return uuid.uuid4().hex[:12]


def find_line(order: Order, key: str) -> OrderLineItem:
    """
    Find a line item by line id, or by product id when it is unique.

    Raises:
        LineItemNotFoundError: If no line matches.
        AmbiguousLineItemError: If the product id matches several lines.
    """
    for line in order.products:
        if line.line_id == key:
            return line
    matches = [line for line in order.products if line.product_id == key]
    if not matches:
        raise LineItemNotFoundError(order.order_id, key)
    if len(matches) > 1:
        raise AmbiguousLineItemError(order.order_id, key, len(matches))
    return matches[0]


def require_text(value: str | None, field: str) -> str:
    """Return the stripped value or raise InvalidInputError when blank."""
    if value is None or not str(value).strip():
        raise InvalidInputError(f"Missing required field: {field}", field=field)
    return str(value).strip()
