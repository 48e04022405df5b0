"""
Money helpers and per-type discount calculators.

A coupon's discount type selects its calculator from DISCOUNT_CALCULATORS.
Every calculator returns an amount between zero and the subtotal, so the
final price derived from it can never go negative.
"""
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Dict

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def money(value) -> Decimal:
    """Quantize to cents. Floats go through str() to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _clamp(amount: Decimal, subtotal: Decimal) -> Decimal:
    return max(min(amount, subtotal), ZERO)


def percentage_discount(subtotal: Decimal, value: Decimal) -> Decimal:
    return _clamp(money(subtotal * value / 100), subtotal)


def fixed_discount(subtotal: Decimal, value: Decimal) -> Decimal:
    return _clamp(money(value), subtotal)


DISCOUNT_CALCULATORS: Dict[DiscountType, Callable[[Decimal, Decimal], Decimal]] = {
    DiscountType.PERCENTAGE: percentage_discount,
    DiscountType.FIXED: fixed_discount,
}


def compute_discount(discount_type, value, subtotal: Decimal) -> Decimal:
    calculator = DISCOUNT_CALCULATORS[DiscountType(discount_type)]
    return calculator(money(subtotal), Decimal(str(value)))
