"""
Module: billing_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines. This
    is the canonical import surface for billing_services and
    billing_server.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel (and sibling engine modules).
    MUST NOT import billing_services, billing_config or billing_server.

Invariants enforced:
    - Purity: engines never read the clock. ``now`` / ``as_of`` are
      explicit parameters.
    - Decimal-only arithmetic at full precision; rounding lives in
      ``billing_engines.presentation``.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from billing_engines import compute_summary, PaymentLedger, resolve_invoice_status

    summary = compute_summary(items, tax_percentage=5, discount_percentage=10)
    position = PaymentLedger(payments).apply(summary.total)
    status = resolve_invoice_status(summary, position, due_date, now)
"""

from billing_engines.charges import FinancialSummary, compute_summary, summarize_document
from billing_engines.ledger import LedgerPosition, PaymentLedger, apply_payments
from billing_engines.line_items import LineItemSet
from billing_engines.overview import (
    InvoiceOverview,
    ParentPaymentStatus,
    QuotationOverview,
    resolve_parent_payment_status,
    summarize_invoices,
    summarize_quotations,
)
from billing_engines.presentation import format_amount, format_percentage, round_for_display
from billing_engines.recurrence import iter_occurrences, next_occurrence, occurrences
from billing_engines.status import (
    InvoiceStatus,
    resolve_document_status,
    resolve_invoice_status,
    transition_quotation,
)

__all__ = [
    "FinancialSummary",
    "InvoiceOverview",
    "InvoiceStatus",
    "LedgerPosition",
    "LineItemSet",
    "ParentPaymentStatus",
    "PaymentLedger",
    "QuotationOverview",
    "apply_payments",
    "compute_summary",
    "format_amount",
    "format_percentage",
    "iter_occurrences",
    "next_occurrence",
    "occurrences",
    "resolve_document_status",
    "resolve_invoice_status",
    "resolve_parent_payment_status",
    "round_for_display",
    "summarize_document",
    "summarize_invoices",
    "summarize_quotations",
    "transition_quotation",
]
