"""
Module: billing_server.models
Responsibility: ORM records of the reference system of record: financial
    documents with their line items and payments, notes and attachments.
Architecture position: Server > Models. Imports db/base and the kernel's
    domain values (for ``to_dto``). Never imported by billing_services.

Invariants enforced:
    - Line items and payments are owned by their document
      (delete-orphan cascade).
    - ``sequence`` gives a stable newest-first listing order and feeds
      document numbering.
    - Derived figures (total, remaining balance, invoice status) are not
      columns. ``to_wire`` computes them from the rows via the engines.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engines import PaymentLedger, resolve_invoice_status, summarize_document
from billing_kernel.domain import (
    DocumentKind,
    FinancialDocument,
    LineItem,
    Payment,
    QuotationStatus,
    RecurrenceRule,
)
from billing_server.db.base import Base


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class DocumentRecord(Base):
    """Persistent invoice or quotation."""

    __tablename__ = "documents"

    __table_args__ = (
        Index("ix_documents_kind_parent", "kind", "parent_id"),
    )

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    document_number: Mapped[str] = mapped_column(String(50), nullable=False)
    issue_date: Mapped[date] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(nullable=False)
    tax_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    discount_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quotation_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recurrence_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    recurrence_start: Mapped[date | None] = mapped_column(nullable=True)
    recurrence_end: Mapped[date | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    items: Mapped[list[LineItemRecord]] = relationship(
        "LineItemRecord",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="LineItemRecord.position",
        lazy="selectin",
    )
    payments: Mapped[list[PaymentRecord]] = relationship(
        "PaymentRecord",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="PaymentRecord.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<DocumentRecord {self.kind} {self.document_number} id={self.id}>"

    def to_dto(self) -> FinancialDocument:
        """Convert ORM record to a frozen domain document."""
        recurrence = None
        if self.recurrence_frequency and self.recurrence_start:
            recurrence = RecurrenceRule(
                frequency=self.recurrence_frequency,
                start_date=self.recurrence_start,
                end_date=self.recurrence_end,
            )
        return FinancialDocument(
            id=self.id,
            kind=DocumentKind(self.kind),
            document_number=self.document_number,
            issue_date=self.issue_date,
            due_date=self.due_date,
            items=tuple(i.to_dto() for i in self.items),
            tax_percentage=self.tax_percentage,
            discount_percentage=self.discount_percentage,
            notes=self.notes,
            payments=tuple(p.to_dto() for p in self.payments),
            quotation_status=(
                QuotationStatus(self.quotation_status) if self.quotation_status else None
            ),
            parent_id=self.parent_id,
            recurrence=recurrence,
        )

    def to_wire(self, as_of: date) -> dict[str, Any]:
        """Reply body for this document, including server-derived figures."""
        document = self.to_dto()
        summary = summarize_document(document)
        wire: dict[str, Any] = {
            "id": self.id,
            "issue_date": _iso(self.issue_date),
            "tax_percentage": str(self.tax_percentage),
            "discount_percentage": str(self.discount_percentage),
            "notes": self.notes,
            "parent_id": self.parent_id,
            "items": [i.to_wire() for i in self.items],
            "total": str(summary.total),
            "created_at": _iso(self.created_at),
        }
        if document.is_invoice:
            position = PaymentLedger(document.payments, document.id).apply(summary.total)
            wire.update(
                invoice_no=self.document_number,
                due_date=_iso(self.due_date),
                payments=[p.to_wire() for p in self.payments],
                remaining_balance=str(position.remaining_balance),
                status=resolve_invoice_status(summary, position, self.due_date, as_of).value,
                recurrence=(
                    {
                        "frequency": self.recurrence_frequency,
                        "start_date": _iso(self.recurrence_start),
                        "end_date": _iso(self.recurrence_end),
                    }
                    if self.recurrence_frequency
                    else None
                ),
            )
        else:
            wire.update(
                quotation_no=self.document_number,
                expiry_date=_iso(self.due_date),
                status=self.quotation_status,
            )
        return wire


class LineItemRecord(Base):
    __tablename__ = "line_items"

    document_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    rate: Mapped[Decimal] = mapped_column(nullable=False)

    document: Mapped[DocumentRecord] = relationship("DocumentRecord", back_populates="items")

    def to_dto(self) -> LineItem:
        return LineItem(
            id=self.id,
            description=self.description,
            quantity=self.quantity,
            rate=self.rate,
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": str(self.quantity),
            "rate": str(self.rate),
        }


class PaymentRecord(Base):
    """Persistent payment. Never updated; a correction is delete + create."""

    __tablename__ = "payments"

    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_date: Mapped[date] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    invoice: Mapped[DocumentRecord] = relationship("DocumentRecord", back_populates="payments")

    def to_dto(self) -> Payment:
        return Payment(
            id=self.id,
            amount=self.amount,
            date=self.payment_date,
            method=self.payment_method,
            note=self.note,
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount": str(self.amount),
            "payment_date": _iso(self.payment_date),
            "payment_method": self.payment_method,
            "note": self.note,
        }


class NoteRecord(Base):
    __tablename__ = "notes"

    parent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String(200), nullable=False, default="Unknown")
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "content": self.content,
            "author": self.author,
            "created_at": _iso(self.created_at),
        }


class AttachmentRecord(Base):
    __tablename__ = "attachments"

    parent_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    size: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "file_name": self.file_name,
            "url": self.url,
            "size": self.size,
            "created_at": _iso(self.created_at),
        }
