from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal


MONEY_QUANT = Decimal("0.01")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


@dataclass(frozen=True)
class DiscountBreakdown:
    price: Decimal
    discount_amount: Decimal
    total: Decimal


def apply_percentage_discount(
    price: Decimal,
    percent: int,
    *,
    rounding: MoneyRounding = "half_up",
) -> DiscountBreakdown:
    """Apply a whole-number percentage discount to a registration price.

    The discount amount is rounded to cents and never exceeds the price, so the
    total is always between zero and the original price.
    """
    base = quantize_money(Decimal(price), rounding=rounding)
    if base < 0:
        raise ValueError("Price must not be negative")
    pct = max(0, min(100, int(percent)))
    amount = quantize_money(base * Decimal(pct) / Decimal("100"), rounding=rounding)
    amount = min(amount, base)
    return DiscountBreakdown(price=base, discount_amount=amount, total=quantize_money(base - amount))
