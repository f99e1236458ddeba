"""
Wire codecs -- entity <-> JSON payload conversion.

Outbound payloads carry amounts as strings so Decimal precision survives
the trip. Inbound data is read leniently: missing fields fall back to the
local (optimistic) value when merging.

Merging never reads ``remaining_balance`` or ``status`` from the server:
those are derived values and are recomputed locally on every read.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any, Mapping

from billing_kernel.domain import (
    AttachmentFile,
    DocumentKind,
    FinancialDocument,
    LineItem,
    NoteItem,
    Payment,
    PaymentMethod,
    QuotationStatus,
    RecurrenceRule,
)
from billing_kernel.exceptions import ValidationError


def parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field_name} is not a date: {value!r}")


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"not a timestamp: {value!r}") from None


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# -- outbound -----------------------------------------------------------------


def items_to_wire(items: tuple[LineItem, ...]) -> list[dict[str, Any]]:
    return [
        {"description": i.description, "quantity": str(i.quantity), "rate": str(i.rate)}
        for i in items
    ]


def recurrence_to_wire(rule: RecurrenceRule | None) -> dict[str, Any] | None:
    if rule is None:
        return None
    return {
        "frequency": rule.frequency.value,
        "start_date": rule.start_date.isoformat(),
        "end_date": _iso(rule.end_date),
    }


def document_to_wire(document: FinancialDocument) -> dict[str, Any]:
    """Create/update payload for an invoice or quotation."""
    payload: dict[str, Any] = {
        "issue_date": document.issue_date.isoformat(),
        "tax_percentage": str(document.tax_percentage),
        "discount_percentage": str(document.discount_percentage),
        "notes": document.notes,
        "items": items_to_wire(document.items),
        "parent_id": document.parent_id,
    }
    if document.is_invoice:
        payload["invoice_no"] = document.document_number
        payload["due_date"] = document.due_date.isoformat()
        payload["recurrence"] = recurrence_to_wire(document.recurrence)
    else:
        payload["quotation_no"] = document.document_number
        payload["expiry_date"] = document.due_date.isoformat()
        payload["status"] = document.quotation_status.value
    return payload


def payment_to_wire(invoice_id: str, payment: Payment) -> dict[str, Any]:
    return {
        "invoice_id": invoice_id,
        "amount": str(payment.amount),
        "payment_date": payment.date.isoformat(),
        "payment_method": payment.method.value,
        "note": payment.note,
    }


def note_to_wire(note: NoteItem) -> dict[str, Any]:
    return {"parent_id": note.parent_id, "content": note.content, "author": note.author}


def attachment_to_wire(attachment: AttachmentFile) -> dict[str, Any]:
    return {
        "parent_id": attachment.parent_id,
        "file_name": attachment.file_name,
        "url": attachment.url,
        "size": attachment.size_bytes,
    }


# -- inbound ------------------------------------------------------------------


def items_from_wire(rows: Any) -> tuple[LineItem, ...]:
    return tuple(
        LineItem(
            id=str(row.get("id") or f"line-{index}"),
            description=row.get("description", ""),
            quantity=row["quantity"],
            rate=row["rate"],
        )
        for index, row in enumerate(rows or ())
    )


def payment_from_wire(data: Mapping[str, Any]) -> Payment:
    return Payment(
        id=str(data["id"]),
        amount=data["amount"],
        date=parse_date(data.get("payment_date"), "payment_date"),
        method=PaymentMethod.parse(data.get("payment_method")),
        note=data.get("note") or "",
    )


def recurrence_from_wire(data: Any) -> RecurrenceRule | None:
    if not data:
        return None
    end = data.get("end_date")
    return RecurrenceRule(
        frequency=data["frequency"],
        start_date=parse_date(data["start_date"], "start_date"),
        end_date=parse_date(end, "end_date") if end else None,
    )


def document_from_wire(data: Mapping[str, Any], kind: DocumentKind) -> FinancialDocument:
    """Build a document from a server record (refetch)."""
    if kind is DocumentKind.INVOICE:
        return FinancialDocument(
            id=str(data["id"]),
            kind=kind,
            document_number=data.get("invoice_no") or "",
            issue_date=parse_date(data["issue_date"], "issue_date"),
            due_date=parse_date(data["due_date"], "due_date"),
            items=items_from_wire(data.get("items")),
            tax_percentage=data.get("tax_percentage") or "0",
            discount_percentage=data.get("discount_percentage") or "0",
            notes=data.get("notes") or "",
            payments=tuple(payment_from_wire(p) for p in data.get("payments") or ()),
            parent_id=data.get("parent_id"),
            recurrence=recurrence_from_wire(data.get("recurrence")),
        )
    return FinancialDocument(
        id=str(data["id"]),
        kind=kind,
        document_number=data.get("quotation_no") or "",
        issue_date=parse_date(data["issue_date"], "issue_date"),
        due_date=parse_date(data["expiry_date"], "expiry_date"),
        items=items_from_wire(data.get("items")),
        tax_percentage=data.get("tax_percentage") or "0",
        discount_percentage=data.get("discount_percentage") or "0",
        notes=data.get("notes") or "",
        quotation_status=QuotationStatus(data.get("status") or QuotationStatus.PENDING),
        parent_id=data.get("parent_id"),
    )


def note_from_wire(data: Mapping[str, Any]) -> NoteItem:
    return NoteItem(
        id=str(data["id"]),
        parent_id=str(data["parent_id"]),
        content=data.get("content") or "",
        author=data.get("author") or "Unknown",
        created_at=parse_datetime(data.get("created_at")),
    )


def attachment_from_wire(data: Mapping[str, Any]) -> AttachmentFile:
    return AttachmentFile(
        id=str(data["id"]),
        parent_id=str(data["parent_id"]),
        file_name=data.get("file_name") or "",
        url=data.get("url") or "",
        size_bytes=int(data.get("size") or 0),
        uploaded_at=parse_datetime(data.get("created_at")),
    )


# -- merge (server-assigned fields over the optimistic value) -----------------


def merge_document(local: FinancialDocument, data: Mapping[str, Any]) -> FinancialDocument:
    number_key = "invoice_no" if local.is_invoice else "quotation_no"
    items = local.items
    server_items = data.get("items")
    if server_items and len(server_items) == len(local.items):
        items = tuple(
            replace(item, id=str(row.get("id") or item.id))
            for item, row in zip(local.items, server_items)
        )
    return replace(
        local,
        id=str(data.get("id") or local.id),
        document_number=data.get(number_key) or local.document_number,
        items=items,
    )


def merge_payment(
    invoice: FinancialDocument, placeholder_id: str, data: Mapping[str, Any]
) -> FinancialDocument:
    """Swap the optimistic payment for the server's record of it."""
    local = invoice.find_payment(placeholder_id)
    if local is None:
        return invoice
    confirmed = replace(
        local,
        id=str(data.get("id") or local.id),
        method=PaymentMethod.parse(data.get("payment_method") or local.method),
    )
    return invoice.replacing_payment(placeholder_id, confirmed)


def merge_note(local: NoteItem, data: Mapping[str, Any]) -> NoteItem:
    return replace(
        local,
        id=str(data.get("id") or local.id),
        author=data.get("author") or local.author,
        created_at=parse_datetime(data.get("created_at")) or local.created_at,
    )


def merge_attachment(local: AttachmentFile, data: Mapping[str, Any]) -> AttachmentFile:
    return replace(
        local,
        id=str(data.get("id") or local.id),
        url=data.get("url") or local.url,
        uploaded_at=parse_datetime(data.get("created_at")) or local.uploaded_at,
    )
