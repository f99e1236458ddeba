"""
Wire codecs: outbound payloads, decoding server records, and merging
server-assigned fields into optimistic values.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from billing_kernel.domain import (
    DocumentKind,
    FinancialDocument,
    NoteItem,
    Payment,
    PaymentMethod,
    QuotationStatus,
    RecurrenceRule,
    line_items,
)
from billing_kernel.exceptions import ValidationError
from billing_services import codecs


class TestOutbound:
    def test_invoice_payload(self, make_invoice):
        invoice = make_invoice(tax="7.5")
        payload = codecs.document_to_wire(invoice)

        assert payload["invoice_no"] == "INV/2025/01/inv-1"
        assert payload["due_date"] == "2025-02-15"
        assert payload["tax_percentage"] == "7.5"
        assert payload["recurrence"] is None
        assert "status" not in payload
        assert "remaining_balance" not in payload

    def test_quotation_payload_carries_status(self):
        quotation = FinancialDocument(
            id="q1",
            kind=DocumentKind.QUOTATION,
            document_number="QUO/1",
            issue_date=date(2025, 1, 1),
            due_date=date(2025, 1, 31),
            quotation_status=QuotationStatus.ACCEPTED,
        )
        payload = codecs.document_to_wire(quotation)

        assert payload["quotation_no"] == "QUO/1"
        assert payload["expiry_date"] == "2025-01-31"
        assert payload["status"] == "Accepted"

    def test_recurrence_payload(self):
        rule = RecurrenceRule("weekly", date(2025, 1, 6), date(2025, 3, 31))
        assert codecs.recurrence_to_wire(rule) == {
            "frequency": "weekly",
            "start_date": "2025-01-06",
            "end_date": "2025-03-31",
        }


class TestInbound:
    def test_document_from_wire_ignores_derived_fields(self):
        invoice = codecs.document_from_wire(
            {
                "id": 42,
                "invoice_no": "INV/42",
                "issue_date": "2025-01-02T08:00:00Z",
                "due_date": "2025-01-31",
                "items": [{"quantity": "1", "rate": "10"}],
                "status": "Fully Paid",
                "remaining_balance": "0",
            },
            DocumentKind.INVOICE,
        )

        assert invoice.id == "42"
        assert invoice.issue_date == date(2025, 1, 2)
        assert invoice.items[0].id == "line-0"
        assert invoice.tax_percentage == Decimal("0")

    def test_payment_without_method_is_manual(self):
        payment = codecs.payment_from_wire(
            {"id": "p1", "amount": "5", "payment_date": "2025-01-01"}
        )
        assert payment.method is PaymentMethod.MANUAL

    def test_bad_date_rejected(self):
        with pytest.raises(ValidationError):
            codecs.parse_date("31/01/2025", "due_date")

    def test_timestamps_with_zulu_suffix(self):
        parsed = codecs.parse_datetime("2025-01-15T09:00:00Z")
        assert parsed == datetime(2025, 1, 15, 9, tzinfo=timezone.utc)
        assert codecs.parse_datetime("") is None


class TestMerge:
    def test_merge_document_takes_id_number_and_item_ids(self):
        local = FinancialDocument(
            id="tmp-1",
            kind=DocumentKind.INVOICE,
            document_number="",
            issue_date=date(2025, 1, 1),
            due_date=date(2025, 1, 31),
            items=line_items([{"quantity": 1, "rate": 5}]),
        )
        merged = codecs.merge_document(local, {
            "id": "inv-9",
            "invoice_no": "INV/2025/01/0009",
            "items": [{"id": "li-1", "quantity": "1", "rate": "5"}],
            "remaining_balance": "123",
        })

        assert merged.id == "inv-9"
        assert merged.document_number == "INV/2025/01/0009"
        assert merged.items[0].id == "li-1"
        assert merged.items[0].rate == Decimal("5")

    def test_merge_document_keeps_local_items_on_count_mismatch(self):
        local = FinancialDocument(
            id="tmp-1",
            kind=DocumentKind.INVOICE,
            document_number="",
            issue_date=date(2025, 1, 1),
            due_date=date(2025, 1, 31),
            items=line_items([{"id": "a", "quantity": 1, "rate": 5}]),
        )
        merged = codecs.merge_document(local, {"id": "inv-9", "items": []})
        assert merged.items[0].id == "a"

    def test_merge_payment_swaps_placeholder(self, make_invoice):
        payment = Payment(id="tmp-p", amount=10, date=date(2025, 1, 1))
        invoice = make_invoice().with_payment(payment)

        merged = codecs.merge_payment(invoice, "tmp-p", {"id": "pay-1", "payment_method": "CASH"})

        (confirmed,) = merged.payments
        assert confirmed.id == "pay-1"
        assert confirmed.method is PaymentMethod.CASH
        assert confirmed.amount == Decimal("10")

    def test_merge_note_keeps_local_author_when_absent(self):
        note = NoteItem(id="tmp-n", parent_id="appt-1", content="hi", author="Dr. Ade")
        merged = codecs.merge_note(note, {"id": "n-1", "created_at": "2025-01-15T09:00:00+00:00"})

        assert merged.id == "n-1"
        assert merged.author == "Dr. Ade"
        assert merged.created_at.year == 2025
