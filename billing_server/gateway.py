"""
Module: billing_server.gateway
Responsibility: In-process system of record. ``RecordGateway`` serves the
    same create / update / delete contract the HTTP API does, persisting
    to SQLAlchemy and replying with the API's envelope
    ``{"status", "message", "data", "errors"}``.
Architecture position: Server. Imports billing_kernel and billing_engines
    (the server mirrors the engine's arithmetic); never billing_services.

Invariants enforced:
    - Every write re-validates with the same engines the client uses:
      line items, percentages, non-negative totals, payment admissibility
      and quotation transitions.
    - Derived figures are computed on read and returned alongside the
      record; they are never persisted.
    - One request is one transaction (session_scope).

Failure modes (as replies, never raised out of ``handle``):
    - 404 for an unknown collection, operation or record.
    - 422 with per-field ``errors`` for invalid input.

Usage:
    init_engine_from_url()
    create_tables()
    gateway = RecordGateway(clock=DeterministicClock())
    data = await gateway.create("invoices", payload)
"""

from __future__ import annotations

from collections import deque
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_engines import (
    PaymentLedger,
    compute_summary,
    resolve_invoice_status,
    summarize_document,
    transition_quotation,
)
from billing_kernel.domain import (
    Clock,
    DocumentKind,
    LineItem,
    PaymentMethod,
    QuotationStatus,
    RecurrenceRule,
    SystemClock,
    as_decimal,
)
from billing_kernel.envelope import failure, interpret_response, success
from billing_kernel.exceptions import (
    BillingEngineError,
    EntityNotFoundError,
    InvalidLineItemError,
    InvalidPaymentError,
    InvalidStatusTransitionError,
    NegativeTotalError,
    OverpaymentError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_server.db.engine import session_scope
from billing_server.models import (
    AttachmentRecord,
    DocumentRecord,
    LineItemRecord,
    NoteRecord,
    PaymentRecord,
)

logger = get_logger("server.gateway")

OVERPAYMENT_EPSILON = Decimal("0.005")

Reply = tuple[int, dict[str, Any]]
Handler = Callable[[Session, str, str | None, Mapping[str, Any]], Reply]

_KINDS = {"invoices": DocumentKind.INVOICE, "quotations": DocumentKind.QUOTATION}
_NUMBER_PREFIX = {DocumentKind.INVOICE: "INV", DocumentKind.QUOTATION: "QUO"}
_LABELS = {DocumentKind.INVOICE: "Invoice", DocumentKind.QUOTATION: "Quotation"}
_TRANSITION_ACTIONS = {
    QuotationStatus.ACCEPTED: "accept",
    QuotationStatus.REJECTED: "reject",
    QuotationStatus.PENDING: "reopen",
}

# Field an engine error is reported under when it carries none itself.
_ERROR_FIELDS: dict[type, str] = {
    NegativeTotalError: "discount_percentage",
    InvalidPaymentError: "amount",
    OverpaymentError: "amount",
    InvalidStatusTransitionError: "status",
}


class RequestFieldError(ValidationError):
    """A request field is missing or malformed."""

    code: str = "REQUEST_FIELD_INVALID"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


def _error_field(exc: BillingEngineError) -> str:
    if isinstance(exc, InvalidLineItemError):
        return f"items.{exc.field}"
    field = getattr(exc, "field", None)
    if field:
        return field
    for exc_type, name in _ERROR_FIELDS.items():
        if isinstance(exc, exc_type):
            return name
    return "non_field_errors"


def _invalid(exc: BillingEngineError) -> Reply:
    message = str(exc)
    if isinstance(exc, OverpaymentError):
        message = "Payment amount exceeds the outstanding balance"
    return 422, failure("Validation failed", {_error_field(exc): [message]})


# -- request parsing ----------------------------------------------------------


def _label(name: str) -> str:
    return name.replace("_", " ")


def _required(payload: Mapping[str, Any], name: str) -> Any:
    value = payload.get(name)
    if value is None or value == "":
        raise RequestFieldError(name, f"The {_label(name)} field is required.")
    return value


def _date(payload: Mapping[str, Any], name: str) -> date:
    value = _required(payload, name)
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RequestFieldError(name, f"The {_label(name)} is not a valid date.") from None


def _optional_date(payload: Mapping[str, Any], name: str) -> date | None:
    if not payload.get(name):
        return None
    return _date(payload, name)


def _decimal(payload: Mapping[str, Any], name: str, default: str | None = None) -> Decimal:
    value = payload.get(name)
    if value is None or value == "":
        if default is None:
            raise RequestFieldError(name, f"The {_label(name)} field is required.")
        value = default
    try:
        return as_decimal(value, name)
    except ValidationError:
        raise RequestFieldError(name, f"The {_label(name)} must be a number.") from None


def _line_items(payload: Mapping[str, Any]) -> list[LineItem]:
    return [
        LineItem(
            id=f"line-{index}",
            description=str(row.get("description") or ""),
            quantity=_decimal(row, "quantity"),
            rate=_decimal(row, "rate"),
        )
        for index, row in enumerate(payload.get("items") or [])
    ]


def _quotation_status(payload: Mapping[str, Any]) -> QuotationStatus:
    try:
        return QuotationStatus(payload.get("status") or QuotationStatus.PENDING)
    except ValueError:
        raise RequestFieldError("status", f"Unknown status {payload.get('status')!r}.") from None


def _recurrence(payload: Mapping[str, Any]) -> RecurrenceRule | None:
    data = payload.get("recurrence")
    if not data:
        return None
    try:
        return RecurrenceRule(
            frequency=_required(data, "frequency"),
            start_date=_date(data, "start_date"),
            end_date=_optional_date(data, "end_date"),
        )
    except ValueError:
        raise RequestFieldError("recurrence", "The recurrence frequency is invalid.") from None


class RecordGateway:
    """
    Reference implementation of the remote contract over SQLAlchemy.

    ``handle`` is synchronous and returns ``(status_code, body)`` exactly
    as the HTTP API would. The async ``create`` / ``update`` / ``delete``
    methods feed that reply through ``interpret_response`` so callers see
    the same success/failure taxonomy as over the network.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._scripted: deque[Reply] = deque()
        self._handlers: dict[tuple[str, str], Handler] = {
            ("invoices", "create"): self._create_document,
            ("invoices", "update"): self._update_document,
            ("invoices", "delete"): self._delete_document,
            ("quotations", "create"): self._create_document,
            ("quotations", "update"): self._update_document,
            ("quotations", "delete"): self._delete_document,
            ("payments", "create"): self._create_payment,
            ("payments", "delete"): self._delete_payment,
            ("notes", "create"): self._create_note,
            ("notes", "delete"): self._delete_simple,
            ("attachments", "create"): self._create_attachment,
            ("attachments", "delete"): self._delete_simple,
        }

    # -- async contract --------------------------------------------------------

    async def create(self, collection: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return interpret_response(*self.handle("create", collection, None, payload))

    async def update(
        self, collection: str, entity_id: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        return interpret_response(*self.handle("update", collection, entity_id, payload))

    async def delete(self, collection: str, entity_id: str) -> dict[str, Any]:
        return interpret_response(*self.handle("delete", collection, entity_id, None))

    async def fetch(self, collection: str, parent_id: str | None = None) -> list[dict[str, Any]]:
        """Current records of a collection, newest first."""
        return self.list_records(collection, parent_id)

    # -- request handling ------------------------------------------------------

    def script_reply(self, status_code: int, body: Mapping[str, Any]) -> None:
        """Answer the next request with a fixed reply instead of handling it."""
        self._scripted.append((status_code, dict(body)))

    def handle(
        self,
        operation: str,
        collection: str,
        entity_id: str | None,
        payload: Mapping[str, Any] | None,
    ) -> Reply:
        if self._scripted:
            reply = self._scripted.popleft()
            logger.info("scripted_reply", extra={"status_code": reply[0], "operation": operation})
            return reply

        handler = self._handlers.get((collection, operation))
        if handler is None:
            return 404, failure(f"No route for {operation} {collection}")

        try:
            with session_scope() as session:
                reply = handler(session, collection, entity_id, payload or {})
        except EntityNotFoundError as exc:
            logger.info("record_not_found", extra={"record_id": exc.entity_id})
            return 404, failure(str(exc))
        except (ValidationError, OverpaymentError) as exc:
            logger.info("request_rejected", extra={"error_code": exc.code, "operation": operation})
            return _invalid(exc)

        logger.info(
            "request_handled",
            extra={
                "operation": operation,
                "record_collection": collection,
                "status_code": reply[0],
            },
        )
        return reply

    def list_records(self, collection: str, parent_id: str | None = None) -> list[dict[str, Any]]:
        model: Any
        if collection in _KINDS:
            model = DocumentRecord
        elif collection == "notes":
            model = NoteRecord
        elif collection == "attachments":
            model = AttachmentRecord
        else:
            raise KeyError(f"Unknown collection: {collection}")

        with session_scope() as session:
            stmt = select(model).order_by(model.sequence.desc())
            if model is DocumentRecord:
                stmt = stmt.where(DocumentRecord.kind == _KINDS[collection].value)
            if parent_id is not None:
                stmt = stmt.where(model.parent_id == parent_id)
            records = session.scalars(stmt).all()
            if model is DocumentRecord:
                return [r.to_wire(self._clock.today()) for r in records]
            return [r.to_wire() for r in records]

    # -- documents -------------------------------------------------------------

    def _create_document(
        self, session: Session, collection: str, _: str | None, payload: Mapping[str, Any]
    ) -> Reply:
        kind = _KINDS[collection]
        record = DocumentRecord(
            kind=kind.value,
            sequence=self._next_sequence(session, DocumentRecord),
            document_number="",
            created_at=self._clock.now(),
        )
        self._apply_document_fields(record, kind, payload, creating=True)
        if not record.document_number:
            record.document_number = self._next_number(session, kind, record.issue_date)
        session.add(record)
        session.flush()
        return 201, success(
            f"{_LABELS[kind]} created successfully", record.to_wire(self._clock.today())
        )

    def _update_document(
        self, session: Session, collection: str, entity_id: str | None, payload: Mapping[str, Any]
    ) -> Reply:
        kind = _KINDS[collection]
        record = self._document(session, entity_id, kind)
        self._apply_document_fields(record, kind, payload, creating=False)
        session.flush()
        return 200, success(
            f"{_LABELS[kind]} updated successfully", record.to_wire(self._clock.today())
        )

    def _delete_document(
        self, session: Session, collection: str, entity_id: str | None, _: Mapping[str, Any]
    ) -> Reply:
        record = self._document(session, entity_id, _KINDS[collection])
        session.delete(record)
        return 200, success("Deleted successfully", {"id": record.id})

    def _apply_document_fields(
        self,
        record: DocumentRecord,
        kind: DocumentKind,
        payload: Mapping[str, Any],
        creating: bool,
    ) -> None:
        issue_date = _date(payload, "issue_date")
        due_date = _date(payload, "due_date" if kind is DocumentKind.INVOICE else "expiry_date")
        tax = _decimal(payload, "tax_percentage", "0")
        discount = _decimal(payload, "discount_percentage", "0")
        items = _line_items(payload)
        summary = compute_summary(items, tax, discount)

        if kind is DocumentKind.INVOICE:
            paid = sum((p.amount for p in record.payments), Decimal("0"))
            if summary.total < paid - OVERPAYMENT_EPSILON:
                raise OverpaymentError(record.id, paid, summary.total)
            rule = _recurrence(payload)
            record.recurrence_frequency = rule.frequency.value if rule else None
            record.recurrence_start = rule.start_date if rule else None
            record.recurrence_end = rule.end_date if rule else None
            if payload.get("invoice_no"):
                record.document_number = str(payload["invoice_no"])
        else:
            requested = _quotation_status(payload)
            if creating:
                if requested is not QuotationStatus.PENDING:
                    raise RequestFieldError("status", "A new quotation must be pending.")
            else:
                current = QuotationStatus(record.quotation_status or QuotationStatus.PENDING)
                if requested is not current:
                    requested = transition_quotation(current, _TRANSITION_ACTIONS[requested])
            record.quotation_status = requested.value
            if payload.get("quotation_no"):
                record.document_number = str(payload["quotation_no"])

        record.issue_date = issue_date
        record.due_date = due_date
        record.tax_percentage = tax
        record.discount_percentage = discount
        record.notes = str(payload.get("notes") or "")
        record.parent_id = payload.get("parent_id")

        record.items.clear()
        for position, item in enumerate(items):
            record.items.append(
                LineItemRecord(
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    rate=item.rate,
                )
            )

    # -- payments --------------------------------------------------------------

    def _create_payment(
        self, session: Session, collection: str, _: str | None, payload: Mapping[str, Any]
    ) -> Reply:
        invoice_id = str(_required(payload, "invoice_id"))
        invoice = self._document(session, invoice_id, DocumentKind.INVOICE)
        amount = _decimal(payload, "amount")
        if amount <= 0:
            raise InvalidPaymentError(None, "The amount must be greater than zero.")
        payment_date = _date(payload, "payment_date")
        method = PaymentMethod.parse(payload.get("payment_method"))

        document = invoice.to_dto()
        PaymentLedger(document.payments, invoice_id).check_admissible(
            amount, summarize_document(document).total, OVERPAYMENT_EPSILON
        )

        record = PaymentRecord(
            sequence=self._next_sequence(session, PaymentRecord),
            amount=amount,
            payment_date=payment_date,
            payment_method=method.value,
            note=str(payload.get("note") or ""),
        )
        invoice.payments.append(record)
        session.flush()
        return 201, success(
            "Payment recorded successfully", {**record.to_wire(), **self._figures(invoice)}
        )

    def _delete_payment(
        self, session: Session, collection: str, entity_id: str | None, _: Mapping[str, Any]
    ) -> Reply:
        record = session.get(PaymentRecord, entity_id) if entity_id else None
        if record is None:
            raise EntityNotFoundError(collection, str(entity_id))
        invoice = record.invoice
        invoice.payments.remove(record)
        session.flush()
        return 200, success(
            "Payment deleted successfully",
            {"id": record.id, "invoice_id": invoice.id, **self._figures(invoice)},
        )

    def _figures(self, invoice: DocumentRecord) -> dict[str, str]:
        document = invoice.to_dto()
        summary = summarize_document(document)
        position = PaymentLedger(document.payments, document.id).apply(summary.total)
        status = resolve_invoice_status(summary, position, document.due_date, self._clock.today())
        return {"remaining_balance": str(position.remaining_balance), "status": status.value}

    # -- notes and attachments -------------------------------------------------

    def _create_note(
        self, session: Session, collection: str, _: str | None, payload: Mapping[str, Any]
    ) -> Reply:
        content = str(_required(payload, "content")).strip()
        if not content:
            raise RequestFieldError("content", "The content field is required.")
        record = NoteRecord(
            parent_id=str(_required(payload, "parent_id")),
            sequence=self._next_sequence(session, NoteRecord),
            content=content,
            author=str(payload.get("author") or "Unknown"),
            created_at=self._clock.now(),
        )
        session.add(record)
        session.flush()
        return 201, success("Note added successfully", record.to_wire())

    def _create_attachment(
        self, session: Session, collection: str, _: str | None, payload: Mapping[str, Any]
    ) -> Reply:
        size = payload.get("size") or 0
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise RequestFieldError("size", "The size must be a non-negative integer.")
        record = AttachmentRecord(
            parent_id=str(_required(payload, "parent_id")),
            sequence=self._next_sequence(session, AttachmentRecord),
            file_name=str(_required(payload, "file_name")),
            url=str(payload.get("url") or ""),
            size=size,
            created_at=self._clock.now(),
        )
        session.add(record)
        session.flush()
        return 201, success("Document uploaded successfully", record.to_wire())

    def _delete_simple(
        self, session: Session, collection: str, entity_id: str | None, _: Mapping[str, Any]
    ) -> Reply:
        model = NoteRecord if collection == "notes" else AttachmentRecord
        record = session.get(model, entity_id) if entity_id else None
        if record is None:
            raise EntityNotFoundError(collection, str(entity_id))
        session.delete(record)
        return 200, success("Deleted successfully", {"id": record.id})

    # -- helpers ---------------------------------------------------------------

    @staticmethod
    def _document(session: Session, entity_id: str | None, kind: DocumentKind) -> DocumentRecord:
        record = session.get(DocumentRecord, entity_id) if entity_id else None
        if record is None or record.kind != kind.value:
            collection = "invoices" if kind is DocumentKind.INVOICE else "quotations"
            raise EntityNotFoundError(collection, str(entity_id))
        return record

    @staticmethod
    def _next_sequence(session: Session, model: Any) -> int:
        current = session.scalar(select(func.max(model.sequence)))
        return (current or 0) + 1

    @staticmethod
    def _next_number(session: Session, kind: DocumentKind, issue_date: date) -> str:
        count = session.scalar(
            select(func.count())
            .select_from(DocumentRecord)
            .where(DocumentRecord.kind == kind.value)
        )
        return f"{_NUMBER_PREFIX[kind]}/{issue_date.year}/{issue_date.month:02d}/{(count or 0) + 1:04d}"
