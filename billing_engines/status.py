"""
Module: billing_engines.status
Responsibility:
    StatusResolver: derive the human-facing status of an invoice from its
    current summary, ledger position and the wall clock; apply explicit
    quotation transitions.

Architecture position:
    Engines -- pure calculation layer, zero I/O. ``now`` is always passed
    in; the resolver never reads the clock itself.

Invariants enforced:
    - Invoice status is a pure function of current data. It is recomputed
      on every read and never stored.
    - Precedence, evaluated in order:
        1. remaining balance <= 0            -> Fully Paid (terminal)
        2. due date before today, balance > 0 -> Overdue (overlay)
        3. remaining balance == total         -> Unpaid
        4. otherwise                          -> Partially Paid
    - Quotation status changes only through QUOTATION_WORKFLOW.

Failure modes:
    - ``resolve_invoice_status`` never raises. Out-of-domain summaries are
      rejected upstream by the charge calculator.
    - ``transition_quotation`` raises InvalidStatusTransitionError for a
      transition the workflow does not define.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from billing_kernel.domain.values import FinancialDocument
from billing_kernel.domain.workflow import QUOTATION_WORKFLOW, QuotationStatus
from billing_kernel.exceptions import InvalidStatusTransitionError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_engines.charges import FinancialSummary, summarize_document
from billing_engines.ledger import LedgerPosition, PaymentLedger

logger = get_logger("engines.status")


class InvoiceStatus(str, Enum):
    """Derived invoice status vocabulary."""

    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    FULLY_PAID = "Fully Paid"
    OVERDUE = "Overdue"


def _as_date(now: datetime | date) -> date:
    if isinstance(now, datetime):
        return now.date()
    return now


def resolve_invoice_status(
    summary: FinancialSummary,
    position: LedgerPosition,
    due_date: date,
    now: datetime | date,
) -> InvoiceStatus:
    """
    Derive invoice status. An invoice due today is not yet overdue.
    """
    remaining = position.remaining_balance
    if remaining <= 0:
        return InvoiceStatus.FULLY_PAID
    if due_date < _as_date(now):
        return InvoiceStatus.OVERDUE
    if remaining == summary.total:
        return InvoiceStatus.UNPAID
    return InvoiceStatus.PARTIALLY_PAID


def resolve_document_status(
    document: FinancialDocument, now: datetime | date
) -> InvoiceStatus | QuotationStatus:
    """Status of any financial document: derived for invoices, explicit for quotes."""
    if not document.is_invoice:
        return document.quotation_status
    summary = summarize_document(document)
    position = PaymentLedger(document.payments, document.id).apply(summary.total)
    return resolve_invoice_status(summary, position, document.due_date, now)


def transition_quotation(current: QuotationStatus | str, action: str) -> QuotationStatus:
    """
    Apply an explicit quotation action ("accept" or "reject").

    Raises:
        InvalidStatusTransitionError: the current status is terminal or the
            action is not defined for it, or the current status is unknown.
    """
    try:
        current_status = QuotationStatus(current)
    except ValueError:
        raise InvalidStatusTransitionError(str(current), action) from None
    transition = QUOTATION_WORKFLOW.find(current_status.value, action)
    if transition is None:
        raise InvalidStatusTransitionError(current_status.value, action)
    logger.info(
        "quotation_transition",
        extra={"from_status": transition.from_state, "to_status": transition.to_state},
    )
    return QuotationStatus(transition.to_state)


def require_quotation(document: FinancialDocument) -> QuotationStatus:
    if document.is_invoice:
        raise ValidationError(f"document {document.id} is an invoice, not a quotation")
    return document.quotation_status
