"""
Values -- Immutable, self-validating domain value objects.

Responsibility:
    Provides the entity shapes the engine computes over and the store
    holds: LineItem, Payment, FinancialDocument (invoice or quotation),
    NoteItem, AttachmentFile and RecurrenceRule.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Monetary fields are ``Decimal`` after construction (never float).
    - LineItem quantity > 0 and rate >= 0; Payment amount > 0.
    - Quotations never carry payments; invoices never carry a quotation
      status.
    - All values are frozen. Changing a document means building a new one
      (``dataclasses.replace`` or the ``with_*`` helpers) and replacing it
      in the store as a whole.

Failure modes:
    - InvalidLineItemError / InvalidPaymentError on out-of-domain values.
    - ValidationError when a numeric field is not a finite number.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

from billing_kernel.domain.workflow import QuotationStatus
from billing_kernel.exceptions import (
    InvalidLineItemError,
    InvalidPaymentError,
    ValidationError,
)

PLACEHOLDER_PREFIX = "tmp-"


def new_placeholder_id() -> str:
    """Id for an optimistically created entity, replaced on commit."""
    return f"{PLACEHOLDER_PREFIX}{uuid4().hex}"


def is_placeholder(entity_id: str) -> bool:
    return entity_id.startswith(PLACEHOLDER_PREFIX)


def as_decimal(value: Any, field_name: str) -> Decimal:
    """Coerce an already-numeric field to Decimal.

    Accepts Decimal, int and plain numeric strings. Floats are converted
    through their shortest repr so 0.1 becomes Decimal("0.1"). Currency
    strings ("₦1,000") are not parsed.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"{field_name} must be numeric, got {value!r}") from None
    else:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return result


@dataclass(frozen=True)
class LineItem:
    """
    A quantity x rate charge entry on a financial document.

    Owned exclusively by its parent document.
    """

    id: str
    description: str
    quantity: Decimal
    rate: Decimal

    def __post_init__(self) -> None:
        quantity = as_decimal(self.quantity, "quantity")
        rate = as_decimal(self.rate, "rate")
        if quantity <= 0:
            raise InvalidLineItemError(self.id, "quantity", quantity, "must be positive")
        if rate < 0:
            raise InvalidLineItemError(self.id, "rate", rate, "must be non-negative")
        object.__setattr__(self, "quantity", quantity)
        object.__setattr__(self, "rate", rate)

    @property
    def amount(self) -> Decimal:
        return self.quantity * self.rate


class PaymentMethod(str, Enum):
    """How a payment was received."""

    POS = "POS"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"
    ONLINE = "ONLINE"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value: str | PaymentMethod | None) -> PaymentMethod:
        """Read a wire value. Missing methods are recorded as manual entries."""
        if isinstance(value, PaymentMethod):
            return value
        if not value:
            return cls.MANUAL
        normalized = value.strip().upper().replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidPaymentError(None, f"unknown payment method {value!r}") from None

    @property
    def label(self) -> str:
        if self is PaymentMethod.MANUAL:
            return "Manual Entry"
        if self is PaymentMethod.POS:
            return "POS"
        return self.value.replace("_", " ").title()


@dataclass(frozen=True)
class Payment:
    """
    A payment applied against one invoice.

    Never updated in place: a correction is a delete plus a new create.
    """

    id: str
    amount: Decimal
    date: date
    method: PaymentMethod = PaymentMethod.MANUAL
    note: str = ""

    def __post_init__(self) -> None:
        amount = as_decimal(self.amount, "amount")
        if amount <= 0:
            raise InvalidPaymentError(self.id, f"amount must be positive, got {amount}")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "method", PaymentMethod.parse(self.method))


class DocumentKind(str, Enum):
    INVOICE = "invoice"
    QUOTATION = "quotation"


class RecurrenceFrequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class RecurrenceRule:
    """Repeat schedule for a recurring invoice. Both ends are inclusive."""

    frequency: RecurrenceFrequency
    start_date: date
    end_date: date | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "frequency", RecurrenceFrequency(self.frequency))
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValidationError("recurrence end_date precedes start_date")


@dataclass(frozen=True)
class FinancialDocument:
    """
    An invoice or a quotation.

    Same shape for both kinds; they differ in status vocabulary. Invoice
    status is derived at read time by the status resolver and is not a
    field here. Quotation status is explicit.

    ``parent_id`` references (never owns) the Appointment or Project the
    document was raised for.
    """

    id: str
    kind: DocumentKind
    document_number: str
    issue_date: date
    due_date: date
    items: tuple[LineItem, ...] = ()
    tax_percentage: Decimal = Decimal("0")
    discount_percentage: Decimal = Decimal("0")
    notes: str = ""
    payments: tuple[Payment, ...] = ()
    quotation_status: QuotationStatus | None = None
    parent_id: str | None = None
    recurrence: RecurrenceRule | None = None

    def __post_init__(self) -> None:
        kind = DocumentKind(self.kind)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "payments", tuple(self.payments))
        object.__setattr__(
            self, "tax_percentage", as_decimal(self.tax_percentage, "tax_percentage")
        )
        object.__setattr__(
            self,
            "discount_percentage",
            as_decimal(self.discount_percentage, "discount_percentage"),
        )
        if kind is DocumentKind.QUOTATION:
            if self.payments:
                raise InvalidPaymentError(None, "quotations cannot carry payments")
            status = self.quotation_status or QuotationStatus.PENDING
            object.__setattr__(self, "quotation_status", QuotationStatus(status))
        elif self.quotation_status is not None:
            raise ValidationError("invoices have no explicit status")

    @property
    def is_invoice(self) -> bool:
        return self.kind is DocumentKind.INVOICE

    def with_payment(self, payment: Payment) -> FinancialDocument:
        if not self.is_invoice:
            raise InvalidPaymentError(payment.id, "quotations cannot carry payments")
        return replace(self, payments=self.payments + (payment,))

    def without_payment(self, payment_id: str) -> FinancialDocument:
        return replace(
            self, payments=tuple(p for p in self.payments if p.id != payment_id)
        )

    def replacing_payment(self, payment_id: str, payment: Payment) -> FinancialDocument:
        return replace(
            self,
            payments=tuple(payment if p.id == payment_id else p for p in self.payments),
        )

    def find_payment(self, payment_id: str) -> Payment | None:
        for p in self.payments:
            if p.id == payment_id:
                return p
        return None


@dataclass(frozen=True)
class NoteItem:
    """Free-text note on an Appointment or Project. Append/delete only."""

    id: str
    parent_id: str
    content: str
    author: str = "Unknown"
    created_at: datetime | None = None


@dataclass(frozen=True)
class AttachmentFile:
    """Uploaded file reference on an Appointment or Project. Append/delete only."""

    id: str
    parent_id: str
    file_name: str
    url: str = ""
    size_bytes: int = 0
    uploaded_at: datetime | None = None


def line_items(rows: Iterable[dict[str, Any]]) -> tuple[LineItem, ...]:
    """Build line items from plain dicts, assigning placeholder ids if absent."""
    return tuple(
        LineItem(
            id=str(row.get("id") or new_placeholder_id()),
            description=row.get("description", ""),
            quantity=row["quantity"],
            rate=row["rate"],
        )
        for row in rows
    )
