"""
Presentation boundary.

The only place amounts are rounded. Everything upstream keeps full
Decimal precision; views call these helpers when they render.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from billing_kernel.domain.values import as_decimal


def round_for_display(value: Decimal | int | str, places: int = 2) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    return as_decimal(value, "value").quantize(quantum, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | int | str, symbol: str = "₦", places: int = 2) -> str:
    """``format_amount(Decimal("1900"))`` -> ``"₦1,900.00"``. Negatives keep the sign."""
    rounded = round_for_display(value, places)
    sign = "-" if rounded < 0 else ""
    return f"{sign}{symbol}{abs(rounded):,.{places}f}"


def format_percentage(value: Decimal | int | str, places: int = 2) -> str:
    rounded = round_for_display(value, places).normalize()
    # normalize() turns 10.00 into 1E+1
    return f"{rounded:f}%"
