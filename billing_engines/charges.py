"""
Module: billing_engines.charges
Responsibility:
    ChargeCalculator: apply tax and discount percentages to a subtotal and
    produce the FinancialSummary of a document.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - taxAmount = subtotal * taxPercentage / 100
    - discountAmount = subtotal * discountPercentage / 100
    - total = subtotal + taxAmount - discountAmount, exactly, at full
      precision. Rounding happens only at the presentation boundary.
    - A negative total is rejected, never clamped.

Failure modes:
    - InvalidPercentageError for a negative tax or discount percentage.
    - InvalidLineItemError for an out-of-domain item.
    - NegativeTotalError when the discount exceeds subtotal plus tax.

Usage:
    from billing_engines.charges import compute_summary

    summary = compute_summary(items, Decimal("5"), Decimal("10"))
    summary.total   # Decimal
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from billing_kernel.domain.values import FinancialDocument, LineItem, as_decimal
from billing_kernel.exceptions import InvalidPercentageError, NegativeTotalError
from billing_kernel.invariants import EngineInvariant
from billing_kernel.logging_config import get_logger
from billing_engines.line_items import LineItemSet
from billing_engines.tracer import traced_engine

logger = get_logger("engines.charges")

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FinancialSummary:
    """
    Derived totals of one financial document. Never stored.

    Attributes:
        subtotal: Sum of line amounts
        tax_percentage: Tax rate as a percentage (5 means 5%)
        discount_percentage: Discount rate as a percentage
        tax_amount: subtotal * tax_percentage / 100
        discount_amount: subtotal * discount_percentage / 100
        total: subtotal + tax_amount - discount_amount
    """

    subtotal: Decimal
    tax_percentage: Decimal
    discount_percentage: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


def _percentage(value: Decimal | int | str, field_name: str) -> Decimal:
    pct = as_decimal(value, field_name)
    if pct < 0:
        raise InvalidPercentageError(field_name, pct)
    return pct


@traced_engine(
    "charges", "1.0", fingerprint_fields=("items", "tax_percentage", "discount_percentage")
)
def compute_summary(
    items: Iterable[LineItem],
    tax_percentage: Decimal | int | str = Decimal("0"),
    discount_percentage: Decimal | int | str = Decimal("0"),
) -> FinancialSummary:
    """
    Compute the financial summary of a set of line items.

    Pure function - no side effects, no I/O, deterministic output.

    Raises:
        InvalidPercentageError, InvalidLineItemError, NegativeTotalError
    """
    tax_pct = _percentage(tax_percentage, "tax_percentage")
    discount_pct = _percentage(discount_percentage, "discount_percentage")
    subtotal = LineItemSet(items).subtotal

    tax_amount = subtotal * tax_pct / _HUNDRED
    discount_amount = subtotal * discount_pct / _HUNDRED
    total = subtotal + tax_amount - discount_amount

    if total < 0:
        logger.warning(
            "negative_total_rejected",
            extra={
                "subtotal": subtotal,
                "tax_amount": tax_amount,
                "discount_amount": discount_amount,
                "invariant": EngineInvariant.NON_NEGATIVE_TOTAL.value,
            },
        )
        raise NegativeTotalError(subtotal, tax_amount, discount_amount)

    return FinancialSummary(
        subtotal=subtotal,
        tax_percentage=tax_pct,
        discount_percentage=discount_pct,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total=total,
    )


def summarize_document(document: FinancialDocument) -> FinancialSummary:
    """Summary of an invoice or quotation from its current fields."""
    return compute_summary(
        document.items, document.tax_percentage, document.discount_percentage
    )
