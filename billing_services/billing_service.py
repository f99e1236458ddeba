"""
billing_services.billing_service -- Billing operations for one viewed parent.

Responsibility:
    The entry point views call. Each write builds a MutationRequest with
    the entity-specific patch / payload / merge and hands it to the
    OptimisticMutationController. Each read projects the store through
    the pure engines, so derived figures (totals, remaining balance,
    status) are recomputed from current data every time and never cached.

Architecture position:
    Services -- composes billing_engines (pure) with the controller and
    store (stateful). Time enters only through the injected Clock.

Invariants enforced:
    - DERIVED_STATUS: invoice status is resolved at read time.
    - NO_SILENT_OVERPAYMENT: a payment is checked against the outstanding
      balance before it is queued and again against current state right
      before it is applied.
    - Server-reported remaining balance or status is only compared with
      the local derivation (``server_figures_drift``); it is never stored.

Failure modes:
    - ValidationError family, OverpaymentError, EntityNotFoundError:
      raised to the caller; nothing was dispatched and the store is
      unchanged.
    - MutationInFlightError under the ``reject`` in-flight policy.
    - Remote failures come back as a rolled-back MutationOutcome.

Usage:
    service = BillingService.from_settings(get_active_settings(), gateway)
    outcome = await service.create_invoice(
        issue_date=date(2025, 1, 15),
        due_date=date(2025, 2, 15),
        items=line_items([{"quantity": 2, "rate": 500}]),
        tax_percentage=5,
    )
    view = service.invoice_view(outcome.entity.id)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any

from billing_config.schema import BillingSettings, EngineSettings
from billing_engines import (
    FinancialSummary,
    InvoiceOverview,
    InvoiceStatus,
    LedgerPosition,
    ParentPaymentStatus,
    PaymentLedger,
    QuotationOverview,
    format_amount,
    format_percentage,
    next_occurrence,
    resolve_invoice_status,
    resolve_parent_payment_status,
    summarize_document,
    summarize_invoices,
    summarize_quotations,
    transition_quotation,
)
from billing_engines.status import require_quotation
from billing_kernel.domain import (
    AttachmentFile,
    Clock,
    DocumentKind,
    FinancialDocument,
    LineItem,
    NoteItem,
    Payment,
    PaymentMethod,
    RecurrenceRule,
    SystemClock,
    as_decimal,
    is_placeholder,
    new_placeholder_id,
)
from billing_kernel.exceptions import (
    EntityNotFoundError,
    OverpaymentError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_services import codecs
from billing_services.mutation_controller import (
    MutationKind,
    MutationOutcome,
    MutationRequest,
    OptimisticMutationController,
)
from billing_services.notifications import NoticeBoard, NotificationSink
from billing_services.remote import RemoteGateway
from billing_services.store import (
    ATTACHMENTS,
    INVOICES,
    NOTES,
    QUOTATIONS,
    ReconciliationStore,
)

logger = get_logger("services.billing")

PAYMENTS = "payments"

_EDITABLE_FIELDS = frozenset({
    "document_number",
    "issue_date",
    "due_date",
    "items",
    "tax_percentage",
    "discount_percentage",
    "notes",
    "parent_id",
    "recurrence",
})

_DECODERS = {
    INVOICES: lambda row: codecs.document_from_wire(row, DocumentKind.INVOICE),
    QUOTATIONS: lambda row: codecs.document_from_wire(row, DocumentKind.QUOTATION),
    NOTES: codecs.note_from_wire,
    ATTACHMENTS: codecs.attachment_from_wire,
}


@dataclass(frozen=True)
class InvoiceView:
    """Read-time projection of one invoice. Rebuilt on every read."""

    document: FinancialDocument
    summary: FinancialSummary
    position: LedgerPosition
    status: InvoiceStatus

    @property
    def total(self) -> Decimal:
        return self.summary.total

    @property
    def amount_paid(self) -> Decimal:
        return self.position.amount_paid

    @property
    def remaining_balance(self) -> Decimal:
        return self.position.remaining_balance

    def to_display(self, symbol: str = "₦", places: int = 2) -> dict[str, str]:
        """Rounded, formatted strings for rendering."""
        return {
            "invoice_no": self.document.document_number,
            "subtotal": format_amount(self.summary.subtotal, symbol, places),
            "tax": format_percentage(self.summary.tax_percentage, places),
            "tax_amount": format_amount(self.summary.tax_amount, symbol, places),
            "discount": format_percentage(self.summary.discount_percentage, places),
            "discount_amount": format_amount(self.summary.discount_amount, symbol, places),
            "total": format_amount(self.summary.total, symbol, places),
            "amount_paid": format_amount(self.position.amount_paid, symbol, places),
            "remaining_balance": format_amount(self.position.remaining_balance, symbol, places),
            "status": self.status.value,
        }


class BillingService:
    """
    Invoices, quotations, payments, notes and attachments of one view.

    Contract:
        Every write is async and returns the MutationOutcome. Local
        refusals raise before anything is dispatched. Entities still
        carrying a placeholder id (create not yet confirmed) cannot be
        updated or deleted.
    """

    def __init__(
        self,
        controller: OptimisticMutationController,
        clock: Clock | None = None,
        engine_settings: EngineSettings | None = None,
    ):
        self._controller = controller
        self._store = controller.store
        self._clock = clock or SystemClock()
        self._engine = engine_settings or EngineSettings()

    @classmethod
    def from_settings(
        cls,
        settings: BillingSettings,
        gateway: RemoteGateway,
        clock: Clock | None = None,
        notifier: NotificationSink | None = None,
    ) -> BillingService:
        controller = OptimisticMutationController(
            ReconciliationStore(),
            gateway,
            settings.mutations,
            notifier if notifier is not None else NoticeBoard(settings.mutations.notice_history),
        )
        return cls(controller, clock, settings.engine)

    @property
    def store(self) -> ReconciliationStore:
        return self._store

    @property
    def controller(self) -> OptimisticMutationController:
        return self._controller

    @property
    def notices(self) -> NotificationSink | None:
        return self._controller.notifier

    # =========================================================================
    # Invoices
    # =========================================================================

    async def create_invoice(
        self,
        *,
        issue_date: date,
        due_date: date,
        items: Iterable[LineItem] = (),
        tax_percentage: Decimal | int | str = 0,
        discount_percentage: Decimal | int | str = 0,
        notes: str = "",
        document_number: str = "",
        parent_id: str | None = None,
        recurrence: RecurrenceRule | None = None,
    ) -> MutationOutcome:
        document = FinancialDocument(
            id=new_placeholder_id(),
            kind=DocumentKind.INVOICE,
            document_number=document_number,
            issue_date=issue_date,
            due_date=due_date,
            items=tuple(items),
            tax_percentage=tax_percentage,
            discount_percentage=discount_percentage,
            notes=notes,
            parent_id=parent_id,
            recurrence=recurrence,
        )
        return await self._create_document(INVOICES, document, "Invoice created successfully")

    async def update_invoice(self, invoice_id: str, **changes: Any) -> MutationOutcome:
        """Replace editable fields of an invoice. Payments are not editable here."""
        self._require_saved(invoice_id)
        self._check_editable(changes)

        def patch(current: FinancialDocument | None) -> FinancialDocument:
            updated = replace(self._existing(INVOICES, invoice_id, current), **changes)
            total = summarize_document(updated).total
            paid = PaymentLedger(updated.payments, invoice_id).amount_paid
            if total < paid - self._engine.overpayment_epsilon:
                logger.info(
                    "invoice_total_below_paid",
                    extra={"invoice_id": invoice_id, "total": total, "amount_paid": paid},
                )
                raise OverpaymentError(invoice_id, amount=paid, remaining_balance=total)
            return updated

        patch(self._store.find(INVOICES, invoice_id))
        outcome = await self._controller.execute(MutationRequest(
            kind=MutationKind.UPDATE,
            collection=INVOICES,
            entity_id=invoice_id,
            patch=patch,
            payload=codecs.document_to_wire,
            merge=codecs.merge_document,
            success_message="Invoice updated successfully",
        ))
        if outcome.committed:
            self._check_server_figures(invoice_id, outcome.server_data)
        return outcome

    async def delete_invoice(self, invoice_id: str) -> MutationOutcome:
        return await self._delete(INVOICES, invoice_id, "Invoice deleted")

    # =========================================================================
    # Payments (nested in their invoice)
    # =========================================================================

    async def record_payment(
        self,
        invoice_id: str,
        amount: Decimal | int | str,
        *,
        payment_date: date | None = None,
        method: PaymentMethod | str | None = None,
        note: str = "",
    ) -> MutationOutcome:
        """
        Record a payment against an invoice.

        Raises:
            OverpaymentError: the payment exceeds the outstanding balance
                by more than ``overpayment_epsilon``.
        """
        self._require_saved(invoice_id)
        payment = Payment(
            id=new_placeholder_id(),
            amount=amount,
            date=payment_date or self._clock.today(),
            method=method,
            note=note,
        )

        def patch(current: FinancialDocument | None) -> FinancialDocument:
            invoice = self._invoice(invoice_id, current)
            total = summarize_document(invoice).total
            PaymentLedger(invoice.payments, invoice_id).check_admissible(
                payment.amount, total, self._engine.overpayment_epsilon
            )
            return invoice.with_payment(payment)

        patch(self._store.find(INVOICES, invoice_id))
        outcome = await self._controller.execute(MutationRequest(
            kind=MutationKind.CREATE,
            collection=INVOICES,
            entity_id=invoice_id,
            patch=patch,
            payload=lambda _: codecs.payment_to_wire(invoice_id, payment),
            merge=lambda invoice, data: codecs.merge_payment(invoice, payment.id, data),
            remote_collection=PAYMENTS,
            success_message="Payment recorded successfully",
        ))
        if outcome.committed:
            self._check_server_figures(invoice_id, outcome.server_data)
        return outcome

    async def delete_payment(self, invoice_id: str, payment_id: str) -> MutationOutcome:
        self._require_saved(invoice_id)
        self._require_saved(payment_id)

        def patch(current: FinancialDocument | None) -> FinancialDocument:
            invoice = self._invoice(invoice_id, current)
            if invoice.find_payment(payment_id) is None:
                raise EntityNotFoundError(PAYMENTS, payment_id)
            return invoice.without_payment(payment_id)

        patch(self._store.find(INVOICES, invoice_id))
        outcome = await self._controller.execute(MutationRequest(
            kind=MutationKind.DELETE,
            collection=INVOICES,
            entity_id=invoice_id,
            patch=patch,
            remote_collection=PAYMENTS,
            remote_id=payment_id,
            success_message="Payment deleted",
        ))
        if outcome.committed:
            self._check_server_figures(invoice_id, outcome.server_data)
        return outcome

    # =========================================================================
    # Quotations
    # =========================================================================

    async def create_quotation(
        self,
        *,
        issue_date: date,
        expiry_date: date,
        items: Iterable[LineItem] = (),
        tax_percentage: Decimal | int | str = 0,
        discount_percentage: Decimal | int | str = 0,
        notes: str = "",
        document_number: str = "",
        parent_id: str | None = None,
    ) -> MutationOutcome:
        document = FinancialDocument(
            id=new_placeholder_id(),
            kind=DocumentKind.QUOTATION,
            document_number=document_number,
            issue_date=issue_date,
            due_date=expiry_date,
            items=tuple(items),
            tax_percentage=tax_percentage,
            discount_percentage=discount_percentage,
            notes=notes,
            parent_id=parent_id,
        )
        return await self._create_document(QUOTATIONS, document, "Quotation created successfully")

    async def update_quotation(self, quotation_id: str, **changes: Any) -> MutationOutcome:
        self._require_saved(quotation_id)
        self._check_editable(changes)
        if "recurrence" in changes:
            raise ValidationError("quotations do not recur")

        def patch(current: FinancialDocument | None) -> FinancialDocument:
            updated = replace(self._existing(QUOTATIONS, quotation_id, current), **changes)
            summarize_document(updated)
            return updated

        patch(self._store.find(QUOTATIONS, quotation_id))
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.UPDATE,
            collection=QUOTATIONS,
            entity_id=quotation_id,
            patch=patch,
            payload=codecs.document_to_wire,
            merge=codecs.merge_document,
            success_message="Quotation updated successfully",
        ))

    async def delete_quotation(self, quotation_id: str) -> MutationOutcome:
        return await self._delete(QUOTATIONS, quotation_id, "Quotation deleted")

    async def accept_quotation(self, quotation_id: str) -> MutationOutcome:
        return await self._transition_quotation(quotation_id, "accept")

    async def reject_quotation(self, quotation_id: str) -> MutationOutcome:
        return await self._transition_quotation(quotation_id, "reject")

    async def _transition_quotation(self, quotation_id: str, action: str) -> MutationOutcome:
        self._require_saved(quotation_id)

        def patch(current: FinancialDocument | None) -> FinancialDocument:
            quotation = self._existing(QUOTATIONS, quotation_id, current)
            status = transition_quotation(require_quotation(quotation), action)
            return replace(quotation, quotation_status=status)

        patch(self._store.find(QUOTATIONS, quotation_id))
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.UPDATE,
            collection=QUOTATIONS,
            entity_id=quotation_id,
            patch=patch,
            payload=codecs.document_to_wire,
            merge=codecs.merge_document,
            success_message=f"Quotation {action}ed",
        ))

    # =========================================================================
    # Notes and attachments (append / delete only)
    # =========================================================================

    async def add_note(self, parent_id: str, content: str, author: str = "Unknown") -> MutationOutcome:
        if not content or not content.strip():
            raise ValidationError("note content must not be empty")
        note = NoteItem(
            id=new_placeholder_id(),
            parent_id=parent_id,
            content=content.strip(),
            author=author,
            created_at=self._clock.now(),
        )
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.CREATE,
            collection=NOTES,
            entity_id=note.id,
            patch=lambda _: note,
            payload=codecs.note_to_wire,
            merge=codecs.merge_note,
            success_message="Note added",
        ))

    async def delete_note(self, note_id: str) -> MutationOutcome:
        return await self._delete(NOTES, note_id, "Note deleted")

    async def add_attachment(
        self,
        parent_id: str,
        file_name: str,
        *,
        url: str = "",
        size_bytes: int = 0,
    ) -> MutationOutcome:
        if not file_name or not file_name.strip():
            raise ValidationError("attachment file_name must not be empty")
        if size_bytes < 0:
            raise ValidationError(f"attachment size must be non-negative, got {size_bytes}")
        attachment = AttachmentFile(
            id=new_placeholder_id(),
            parent_id=parent_id,
            file_name=file_name.strip(),
            url=url,
            size_bytes=size_bytes,
            uploaded_at=self._clock.now(),
        )
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.CREATE,
            collection=ATTACHMENTS,
            entity_id=attachment.id,
            patch=lambda _: attachment,
            payload=codecs.attachment_to_wire,
            merge=codecs.merge_attachment,
            success_message="Document uploaded successfully",
        ))

    async def delete_attachment(self, attachment_id: str) -> MutationOutcome:
        return await self._delete(ATTACHMENTS, attachment_id, "Document deleted")

    # =========================================================================
    # Reads
    # =========================================================================

    def invoice_view(self, invoice_id: str) -> InvoiceView:
        return self._view(self._invoice(invoice_id, self._store.find(INVOICES, invoice_id)))

    def invoice_views(self, parent_id: str | None = None) -> tuple[InvoiceView, ...]:
        return tuple(self._view(doc) for doc in self._documents(INVOICES, parent_id))

    def invoice_display(self, invoice_id: str) -> dict[str, str]:
        return self.invoice_view(invoice_id).to_display(
            self._engine.currency_symbol, self._engine.display_places
        )

    def invoice_overview(self, parent_id: str | None = None) -> InvoiceOverview:
        return summarize_invoices(self._documents(INVOICES, parent_id), self._clock.now())

    def quotation_overview(self, parent_id: str | None = None) -> QuotationOverview:
        return summarize_quotations(self._documents(QUOTATIONS, parent_id))

    def parent_payment_status(self, parent_id: str) -> ParentPaymentStatus:
        return resolve_parent_payment_status(self._documents(INVOICES, parent_id))

    def next_issue_date(self, invoice_id: str, after: date | None = None) -> date | None:
        """Next date a recurring invoice is due to be issued, or None."""
        invoice = self._invoice(invoice_id, self._store.find(INVOICES, invoice_id))
        if invoice.recurrence is None:
            return None
        return next_occurrence(invoice.recurrence, after or self._clock.today())

    def refresh(self, collection: str, records: Iterable[Mapping[str, Any]]) -> None:
        """
        Reload a collection from server records.

        Entities with a mutation in flight keep their optimistic value.
        """
        decoder = _DECODERS.get(collection)
        if decoder is None:
            raise KeyError(f"Unknown collection: {collection}")
        self._controller.apply_refetch(collection, [decoder(row) for row in records])

    # =========================================================================
    # Internals
    # =========================================================================

    async def _create_document(
        self, collection: str, document: FinancialDocument, message: str
    ) -> MutationOutcome:
        summarize_document(document)
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.CREATE,
            collection=collection,
            entity_id=document.id,
            patch=lambda _: document,
            payload=codecs.document_to_wire,
            merge=codecs.merge_document,
            success_message=message,
        ))

    async def _delete(self, collection: str, entity_id: str, message: str) -> MutationOutcome:
        self._require_saved(entity_id)

        def patch(current: Any | None) -> None:
            self._existing(collection, entity_id, current)
            return None

        patch(self._store.find(collection, entity_id))
        return await self._controller.execute(MutationRequest(
            kind=MutationKind.DELETE,
            collection=collection,
            entity_id=entity_id,
            patch=patch,
            success_message=message,
        ))

    def _view(self, document: FinancialDocument) -> InvoiceView:
        summary = summarize_document(document)
        position = PaymentLedger(document.payments, document.id).apply(summary.total)
        status = resolve_invoice_status(summary, position, document.due_date, self._clock.now())
        return InvoiceView(document, summary, position, status)

    def _documents(self, collection: str, parent_id: str | None) -> list[Any]:
        return [
            doc for doc in self._store.items(collection)
            if parent_id is None or doc.parent_id == parent_id
        ]

    @staticmethod
    def _existing(collection: str, entity_id: str, current: Any | None) -> Any:
        if current is None:
            raise EntityNotFoundError(collection, entity_id)
        return current

    def _invoice(self, invoice_id: str, current: FinancialDocument | None) -> FinancialDocument:
        invoice = self._existing(INVOICES, invoice_id, current)
        if not invoice.is_invoice:
            raise ValidationError(f"document {invoice_id} is not an invoice")
        return invoice

    @staticmethod
    def _require_saved(entity_id: str) -> None:
        if is_placeholder(entity_id):
            raise ValidationError(f"{entity_id} has not been saved yet")

    @staticmethod
    def _check_editable(changes: Mapping[str, Any]) -> None:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields not editable: {', '.join(sorted(unknown))}")

    def _check_server_figures(self, invoice_id: str, data: Mapping[str, Any]) -> None:
        """Log when the server's derived figures disagree with ours."""
        if "remaining_balance" not in data and "status" not in data:
            return
        invoice = self._store.find(INVOICES, invoice_id)
        if invoice is None:
            return
        view = self._view(invoice)
        drift: dict[str, Any] = {}
        if "remaining_balance" in data:
            try:
                server_remaining = as_decimal(data["remaining_balance"], "remaining_balance")
            except ValidationError:
                server_remaining = None
            if server_remaining is None or (
                abs(server_remaining - view.remaining_balance) > self._engine.overpayment_epsilon
            ):
                drift["server_remaining_balance"] = data["remaining_balance"]
                drift["local_remaining_balance"] = view.remaining_balance
        if "status" in data and data["status"] != view.status.value:
            drift["server_status"] = data["status"]
            drift["local_status"] = view.status.value
        if drift:
            logger.warning("server_figures_drift", extra={"invoice_id": invoice_id, **drift})
