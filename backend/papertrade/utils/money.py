"""
Money helpers. All monetary values are Decimal rounded half-up to paise.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any


TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
