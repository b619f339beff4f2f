"""
Discount arithmetic.

Plain float arithmetic with no rounding; rounding to two decimals happens
only when a price is formatted for display.
"""

from typing import Any, Mapping, Optional, Union

from schemas import Discount

DiscountLike = Union[Discount, Mapping[str, Any], None]


def _as_discount(discount: DiscountLike) -> Optional[Discount]:
    if discount is None or isinstance(discount, Discount):
        return discount
    return Discount(**discount)


def effective_price(base_price: float, discount: DiscountLike = None) -> float:
    d = _as_discount(discount)
    if d is None or not d.active:
        return base_price
    if d.type == "percentage":
        return base_price * (1 - d.value / 100)
    return max(0.0, base_price - d.value)


def discount_amount(base_price: float, discount: DiscountLike = None) -> float:
    d = _as_discount(discount)
    if d is None or not d.active:
        return 0.0
    return base_price - effective_price(base_price, d)


def has_active_discount(discount: DiscountLike = None) -> bool:
    d = _as_discount(discount)
    return bool(d and d.active and d.value > 0)


def format_price(amount: float) -> str:
    return f"{amount:,.2f}"
