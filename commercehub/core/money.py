"""
Money helpers - the one place rounding policy lives (2 places, round-half-even)
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any

from .errors import MalformedPayload

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """
    Convert a decimal string or number to a 2-place Decimal.
    None and empty strings are zero.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise MalformedPayload(f"Invalid money value: {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedPayload(f"Invalid money value: {value!r}") from e
    if not amount.is_finite():
        raise MalformedPayload(f"Invalid money value: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


def from_minor_units(value: Any) -> Decimal:
    """Integer minor units (cents) to a 2-place Decimal"""
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise MalformedPayload(f"Invalid minor-unit amount: {value!r}")
    try:
        cents = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedPayload(f"Invalid minor-unit amount: {value!r}") from e
    if not cents.is_finite() or cents != cents.to_integral_value():
        raise MalformedPayload(f"Invalid minor-unit amount: {value!r}")
    return (cents / 100).quantize(CENT, rounding=ROUND_HALF_EVEN)


def money_str(value: Decimal) -> str:
    """JSON-safe representation for payload/tenders columns"""
    return str(to_money(value))
