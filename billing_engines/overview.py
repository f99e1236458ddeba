"""
Module: billing_engines.overview
Responsibility:
    Read-time aggregates over a list of documents: the invoice overview
    cards (billed, paid, and outstanding by derived status), the quotation
    overview, and the payment roll-up of an Appointment or Project.

Architecture position:
    Engines -- pure calculation layer, zero I/O. Composes the charge
    calculator, payment ledger and status resolver; caches nothing.

Invariants enforced:
    - Every figure is recomputed from the documents passed in.
    - Outstanding amounts are grouped by the same status the resolver
      reports for a single invoice, so the cards always agree with the
      badges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable

from billing_kernel.domain.values import FinancialDocument
from billing_kernel.domain.workflow import QuotationStatus
from billing_kernel.logging_config import get_logger
from billing_engines.charges import summarize_document
from billing_engines.ledger import PaymentLedger
from billing_engines.status import InvoiceStatus, resolve_invoice_status
from billing_engines.tracer import traced_engine

logger = get_logger("engines.overview")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class InvoiceOverview:
    """Totals for the invoice list header cards."""

    total_billed: Decimal
    total_paid: Decimal
    total_unpaid: Decimal
    total_overdue: Decimal
    total_partially_paid: Decimal
    count_by_status: dict[InvoiceStatus, int] = field(default_factory=dict)

    @property
    def total_outstanding(self) -> Decimal:
        return self.total_unpaid + self.total_overdue + self.total_partially_paid


@dataclass(frozen=True)
class QuotationOverview:
    total_quoted: Decimal
    accepted: int
    pending: int
    rejected: int


class ParentPaymentStatus(str, Enum):
    """Payment progress of an Appointment or Project across its invoices."""

    PAID = "Paid"
    PARTIALLY_PAID = "Partially Paid"
    UNPAID = "Unpaid"


@traced_engine("overview.invoices", "1.0")
def summarize_invoices(
    documents: Iterable[FinancialDocument], as_of: datetime | date
) -> InvoiceOverview:
    """Aggregate invoices. Quotations in ``documents`` are ignored."""
    billed = paid = _ZERO
    outstanding = {status: _ZERO for status in InvoiceStatus}
    counts = {status: 0 for status in InvoiceStatus}

    for doc in documents:
        if not doc.is_invoice:
            continue
        summary = summarize_document(doc)
        position = PaymentLedger(doc.payments, doc.id).apply(summary.total)
        status = resolve_invoice_status(summary, position, doc.due_date, as_of)
        billed += summary.total
        paid += position.amount_paid
        counts[status] += 1
        if status is not InvoiceStatus.FULLY_PAID:
            outstanding[status] += position.remaining_balance

    return InvoiceOverview(
        total_billed=billed,
        total_paid=paid,
        total_unpaid=outstanding[InvoiceStatus.UNPAID],
        total_overdue=outstanding[InvoiceStatus.OVERDUE],
        total_partially_paid=outstanding[InvoiceStatus.PARTIALLY_PAID],
        count_by_status=counts,
    )


@traced_engine("overview.quotations", "1.0")
def summarize_quotations(documents: Iterable[FinancialDocument]) -> QuotationOverview:
    """Aggregate quotations. Invoices in ``documents`` are ignored."""
    quoted = _ZERO
    counts = {status: 0 for status in QuotationStatus}
    for doc in documents:
        if doc.is_invoice:
            continue
        quoted += summarize_document(doc).total
        counts[doc.quotation_status] += 1
    return QuotationOverview(
        total_quoted=quoted,
        accepted=counts[QuotationStatus.ACCEPTED],
        pending=counts[QuotationStatus.PENDING],
        rejected=counts[QuotationStatus.REJECTED],
    )


def resolve_parent_payment_status(
    invoices: Iterable[FinancialDocument],
) -> ParentPaymentStatus:
    """
    Paid when every invoice is settled, Partially Paid when any invoice has
    received a payment, otherwise Unpaid. A parent with no invoices is
    Unpaid.
    """
    positions = [
        PaymentLedger(doc.payments, doc.id).apply(summarize_document(doc).total)
        for doc in invoices
        if doc.is_invoice
    ]
    if not positions:
        return ParentPaymentStatus.UNPAID
    if all(p.is_settled for p in positions):
        return ParentPaymentStatus.PAID
    if any(p.has_payments for p in positions):
        return ParentPaymentStatus.PARTIALLY_PAID
    return ParentPaymentStatus.UNPAID
