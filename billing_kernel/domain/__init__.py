"""
Pure domain layer.

Immutable value objects with no dependencies on the store, the remote
system of record, or the wall clock (time enters only through Clock).
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.values import (
    AttachmentFile,
    DocumentKind,
    FinancialDocument,
    LineItem,
    NoteItem,
    Payment,
    PaymentMethod,
    RecurrenceFrequency,
    RecurrenceRule,
    as_decimal,
    is_placeholder,
    line_items,
    new_placeholder_id,
)
from billing_kernel.domain.workflow import (
    QUOTATION_WORKFLOW,
    QuotationStatus,
    Transition,
    Workflow,
)

__all__ = [
    "AttachmentFile",
    "Clock",
    "DeterministicClock",
    "DocumentKind",
    "FinancialDocument",
    "LineItem",
    "NoteItem",
    "Payment",
    "PaymentMethod",
    "QUOTATION_WORKFLOW",
    "QuotationStatus",
    "RecurrenceFrequency",
    "RecurrenceRule",
    "SystemClock",
    "Transition",
    "Workflow",
    "as_decimal",
    "is_placeholder",
    "line_items",
    "new_placeholder_id",
]
