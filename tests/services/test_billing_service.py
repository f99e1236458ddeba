"""
Tests for BillingService against the scripted gateway.

End-to-end flows through the mutation controller: invoice creation and
edits, payments with overpayment protection, quotation transitions,
notes and attachments, derived read models and refetch.
"""

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from billing_config import get_active_settings
from billing_engines import InvoiceStatus, ParentPaymentStatus
from billing_kernel.domain import (
    Payment,
    PaymentMethod,
    QuotationStatus,
    RecurrenceRule,
    line_items,
)
from billing_kernel.exceptions import (
    EntityNotFoundError,
    InvalidStatusTransitionError,
    NegativeTotalError,
    OverpaymentError,
    RemoteRejection,
    TransportFailure,
    ValidationError,
)
from billing_services import (
    ATTACHMENTS,
    INVOICES,
    NOTES,
    QUOTATIONS,
    BillingService,
    NoticeBoard,
    NoticeLevel,
)

ITEMS = [{"quantity": 2, "rate": 500}, {"quantity": 1, "rate": 1000}]


def _payment(payment_id, amount):
    return Payment(id=payment_id, amount=amount, date=date(2025, 1, 12), method="CASH")


@pytest.fixture
def seeded(store, make_invoice):
    """Invoice inv-1: total 1900, nothing paid, due 2025-02-15."""
    store.upsert(INVOICES, make_invoice("inv-1", tax=5, discount=10))
    return store


# =============================================================================
# End-to-end payment scenario
# =============================================================================


class TestInvoicePaymentScenario:
    def test_create_pay_in_full_then_refuse_overpayment(self, service, store, gateway, arun):
        created = arun(service.create_invoice(
            issue_date=date(2025, 1, 15),
            due_date=date(2025, 2, 15),
            items=line_items(ITEMS),
            tax_percentage=5,
            discount_percentage=10,
        ))
        invoice_id = created.entity.id

        view = service.invoice_view(invoice_id)
        assert view.summary.subtotal == Decimal("2000")
        assert view.summary.tax_amount == Decimal("100")
        assert view.summary.discount_amount == Decimal("200")
        assert view.total == Decimal("1900")
        assert view.status is InvoiceStatus.UNPAID

        paid = arun(service.record_payment(invoice_id, Decimal("1900")))
        assert paid.committed

        view = service.invoice_view(invoice_id)
        assert view.remaining_balance == Decimal("0")
        assert view.status is InvoiceStatus.FULLY_PAID

        before = store.snapshot()
        calls = len(gateway.calls)
        with pytest.raises(OverpaymentError):
            arun(service.record_payment(invoice_id, Decimal("100")))

        assert store.version == before.version
        assert store.items(INVOICES) == before.collections[INVOICES]
        assert len(gateway.calls) == calls

    def test_create_sends_wire_payload_and_takes_server_id(self, service, store, gateway, arun):
        outcome = arun(service.create_invoice(
            issue_date=date(2025, 1, 15),
            due_date=date(2025, 2, 15),
            items=line_items(ITEMS),
            tax_percentage=5,
            parent_id="appt-1",
        ))

        operation, collection, entity_id, payload = gateway.calls[0]
        assert (operation, collection, entity_id) == ("create", INVOICES, None)
        assert payload["tax_percentage"] == "5"
        assert payload["items"][0] == {"description": "", "quantity": "2", "rate": "500"}
        assert payload["parent_id"] == "appt-1"
        assert outcome.entity.id == "srv-1"
        assert [d.id for d in store.items(INVOICES)] == ["srv-1"]

    def test_create_with_negative_total_never_dispatched(self, service, store, gateway, arun):
        with pytest.raises(NegativeTotalError):
            arun(service.create_invoice(
                issue_date=date(2025, 1, 15),
                due_date=date(2025, 2, 15),
                items=line_items(ITEMS),
                discount_percentage=150,
            ))
        assert gateway.calls == []
        assert store.items(INVOICES) == ()


# =============================================================================
# Payments
# =============================================================================


class TestRecordPayment:
    def test_partial_payment(self, service, seeded, gateway, arun):
        outcome = arun(service.record_payment(
            "inv-1", "400", method=PaymentMethod.POS, note="deposit"
        ))

        view = service.invoice_view("inv-1")
        assert outcome.committed
        assert view.amount_paid == Decimal("400")
        assert view.remaining_balance == Decimal("1500")
        assert view.status is InvoiceStatus.PARTIALLY_PAID
        (payment,) = view.document.payments
        assert payment.id == "srv-1"
        assert payment.method is PaymentMethod.POS

        operation, collection, _, payload = gateway.calls[0]
        assert (operation, collection) == ("create", "payments")
        assert payload == {
            "invoice_id": "inv-1",
            "amount": "400",
            "payment_date": "2025-01-15",
            "payment_method": "POS",
            "note": "deposit",
        }

    def test_rejected_payment_is_rolled_back(self, service, seeded, gateway, notices, arun):
        gateway.fail(RemoteRejection(
            "Validation failed", 422, {"amount": ["The amount exceeds the balance."]}
        ))

        outcome = arun(service.record_payment("inv-1", 100))

        assert outcome.rolled_back
        assert service.invoice_view("inv-1").document.payments == ()
        assert notices.latest.message == "The amount exceeds the balance."
        assert notices.latest.level is NoticeLevel.ERROR

    def test_overpayment_within_epsilon_is_admitted(self, service, seeded, arun):
        outcome = arun(service.record_payment("inv-1", "1900.004"))
        assert outcome.committed
        assert service.invoice_view("inv-1").status is InvoiceStatus.FULLY_PAID

    def test_unknown_invoice(self, service, arun):
        with pytest.raises(EntityNotFoundError):
            arun(service.record_payment("inv-404", 10))

    def test_placeholder_invoice_refused(self, service, arun):
        with pytest.raises(ValidationError):
            arun(service.record_payment("tmp-123", 10))

    def test_server_figure_drift_is_logged_not_stored(self, service, seeded, gateway, captured_logs, arun):
        gateway.reply({
            "id": "pay-1",
            "payment_method": "CASH",
            "remaining_balance": "999",
            "status": "Unpaid",
        })

        arun(service.record_payment("inv-1", 400))

        view = service.invoice_view("inv-1")
        assert view.remaining_balance == Decimal("1500")
        assert view.status is InvoiceStatus.PARTIALLY_PAID
        (drift,) = [r for r in captured_logs() if r["message"] == "server_figures_drift"]
        assert drift["server_remaining_balance"] == "999"
        assert drift["local_remaining_balance"] == "1500"
        assert drift["server_status"] == "Unpaid"

    def test_matching_server_figures_are_silent(self, service, seeded, gateway, captured_logs, arun):
        gateway.reply({"id": "pay-1", "remaining_balance": "1500.00", "status": "Partially Paid"})

        arun(service.record_payment("inv-1", 400))

        assert not [r for r in captured_logs() if r["message"] == "server_figures_drift"]


class TestDeletePayment:
    @pytest.fixture
    def part_paid(self, store, make_invoice):
        store.upsert(INVOICES, make_invoice(
            "inv-5000",
            rows=[(1, 5000)],
            payments=(_payment("p-2000", 2000), _payment("p-1000", 1000)),
        ))
        return store

    def test_balance_recomputed_after_delete(self, service, part_paid, gateway, arun):
        outcome = arun(service.delete_payment("inv-5000", "p-2000"))

        view = service.invoice_view("inv-5000")
        assert outcome.committed
        assert view.amount_paid == Decimal("1000")
        assert view.remaining_balance == Decimal("4000")
        assert view.status is InvoiceStatus.PARTIALLY_PAID
        assert gateway.calls == [("delete", "payments", "p-2000", None)]

    def test_failed_delete_restores_payment(self, service, part_paid, gateway, arun):
        before = part_paid.items(INVOICES)
        gateway.fail(RemoteRejection("Server error", 500))

        arun(service.delete_payment("inv-5000", "p-2000"))

        assert part_paid.items(INVOICES) == before
        assert service.invoice_view("inv-5000").amount_paid == Decimal("3000")

    def test_unknown_payment(self, service, part_paid, arun):
        with pytest.raises(EntityNotFoundError):
            arun(service.delete_payment("inv-5000", "p-missing"))

    def test_unsaved_payment_refused(self, service, part_paid, arun):
        with pytest.raises(ValidationError):
            arun(service.delete_payment("inv-5000", "tmp-77"))

    def test_two_deletes_on_one_invoice_are_serialized(self, service, part_paid, gateway, arun):
        async def scenario():
            release = gateway.stall()
            first = asyncio.create_task(service.delete_payment("inv-5000", "p-2000"))
            for _ in range(10):
                await asyncio.sleep(0)
            second = asyncio.create_task(service.delete_payment("inv-5000", "p-1000"))
            for _ in range(10):
                await asyncio.sleep(0)
            release.set()
            return await asyncio.gather(first, second)

        o1, o2 = arun(scenario())

        assert o1.committed and o2.committed
        view = service.invoice_view("inv-5000")
        assert view.document.payments == ()
        assert view.status is InvoiceStatus.UNPAID


# =============================================================================
# Invoice edits
# =============================================================================


class TestUpdateInvoice:
    def test_edit_items_recomputes_figures(self, service, seeded, gateway, arun):
        outcome = arun(service.update_invoice(
            "inv-1", items=line_items([{"quantity": 1, "rate": 100}]), tax_percentage=0,
            discount_percentage=0,
        ))

        assert outcome.committed
        assert service.invoice_view("inv-1").total == Decimal("100")
        assert gateway.calls[0][:3] == ("update", INVOICES, "inv-1")

    def test_total_below_amount_paid_refused(self, service, store, make_invoice, gateway, arun):
        store.upsert(INVOICES, make_invoice(
            "inv-2", rows=[(1, 1000)], payments=(_payment("p1", 800),)
        ))
        before = store.items(INVOICES)

        with pytest.raises(OverpaymentError):
            arun(service.update_invoice("inv-2", items=line_items([{"quantity": 1, "rate": 500}])))

        assert store.items(INVOICES) == before
        assert gateway.calls == []

    def test_payments_are_not_editable(self, service, seeded, arun):
        with pytest.raises(ValidationError):
            arun(service.update_invoice("inv-1", payments=()))

    def test_placeholder_refused(self, service, arun):
        with pytest.raises(ValidationError):
            arun(service.update_invoice("tmp-abc", notes="x"))

    def test_delete_invoice(self, service, seeded, arun):
        outcome = arun(service.delete_invoice("inv-1"))
        assert outcome.committed
        assert seeded.items(INVOICES) == ()

    def test_unexpected_error_keeps_invoice(self, service, seeded, gateway, arun):
        gateway.fail(ValueError("boom"))

        with pytest.raises(ValueError):
            arun(service.delete_invoice("inv-1"))

        assert [i.id for i in seeded.items(INVOICES)] == ["inv-1"]


# =============================================================================
# Quotations
# =============================================================================


class TestQuotations:
    @pytest.fixture
    def quotation_id(self, service, arun):
        outcome = arun(service.create_quotation(
            issue_date=date(2025, 1, 15),
            expiry_date=date(2025, 2, 15),
            items=line_items(ITEMS),
        ))
        return outcome.entity.id

    def test_new_quotation_is_pending(self, service, quotation_id):
        quotation = service.store.get(QUOTATIONS, quotation_id)
        assert quotation.quotation_status is QuotationStatus.PENDING

    def test_accept(self, service, quotation_id, gateway, arun):
        outcome = arun(service.accept_quotation(quotation_id))

        assert outcome.committed
        assert service.store.get(QUOTATIONS, quotation_id).quotation_status is QuotationStatus.ACCEPTED
        assert gateway.calls[-1][3]["status"] == "Accepted"
        assert service.notices.latest.message == "Quotation accepted"

    def test_reject_then_accept_refused(self, service, quotation_id, arun):
        arun(service.reject_quotation(quotation_id))

        with pytest.raises(InvalidStatusTransitionError):
            arun(service.accept_quotation(quotation_id))

    def test_quotations_do_not_recur(self, service, quotation_id, arun):
        with pytest.raises(ValidationError):
            arun(service.update_quotation(
                quotation_id, recurrence=RecurrenceRule("weekly", date(2025, 1, 6))
            ))

    def test_payment_on_quotation_refused(self, service, quotation_id, arun):
        with pytest.raises(EntityNotFoundError):
            arun(service.record_payment(quotation_id, 10))

    def test_overview(self, service, quotation_id, arun):
        arun(service.accept_quotation(quotation_id))
        overview = service.quotation_overview()
        assert overview.total_quoted == Decimal("2000")
        assert overview.accepted == 1


# =============================================================================
# Notes and attachments
# =============================================================================


class TestNotesAndAttachments:
    def test_add_and_delete_note(self, service, store, gateway, arun):
        added = arun(service.add_note("appt-1", "  Patient prefers mornings  ", author="Dr. Ade"))
        note_id = added.entity.id

        assert store.get(NOTES, note_id).content == "Patient prefers mornings"
        assert gateway.calls[0][3] == {
            "parent_id": "appt-1",
            "content": "Patient prefers mornings",
            "author": "Dr. Ade",
        }

        arun(service.delete_note(note_id))
        assert store.items(NOTES) == ()

    def test_empty_note_refused(self, service, gateway, arun):
        with pytest.raises(ValidationError):
            arun(service.add_note("appt-1", "   "))
        assert gateway.calls == []

    def test_newest_note_first(self, service, store, arun):
        arun(service.add_note("appt-1", "first"))
        arun(service.add_note("appt-1", "second"))
        assert [n.content for n in store.items(NOTES)] == ["second", "first"]

    def test_add_attachment_takes_server_url(self, service, store, gateway, arun):
        gateway.reply({"id": "doc-1", "url": "https://files.example/doc-1.pdf"})

        outcome = arun(service.add_attachment("proj-1", "scope.pdf", size_bytes=2048))

        stored = store.get(ATTACHMENTS, "doc-1")
        assert outcome.committed
        assert stored.url == "https://files.example/doc-1.pdf"
        assert stored.size_bytes == 2048

    def test_failed_upload_leaves_no_trace(self, service, store, gateway, notices, arun):
        gateway.fail(RemoteRejection("File too large", 413))

        arun(service.add_attachment("proj-1", "huge.zip"))

        assert store.items(ATTACHMENTS) == ()
        assert notices.latest.message == "File too large"

    def test_delete_unknown_attachment(self, service, arun):
        with pytest.raises(EntityNotFoundError):
            arun(service.delete_attachment("doc-404"))

    def test_malformed_note_reply_rolls_back(self, service, store, gateway, notices, arun):
        gateway.reply({"id": "srv-1", "created_at": "not-a-timestamp"})

        outcome = arun(service.add_note("appt-1", "Follow up"))

        assert outcome.rolled_back
        assert store.items(NOTES) == ()
        assert notices.latest.level is NoticeLevel.ERROR
        assert notices.latest.message == TransportFailure.GENERIC_MESSAGE


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    def test_invoice_display_is_rounded_at_the_boundary(self, service, store, make_invoice):
        store.upsert(INVOICES, make_invoice("inv-r", rows=[(3, "33.335")], tax="7.5"))

        display = service.invoice_display("inv-r")

        assert display["subtotal"] == "₦100.01"
        assert display["tax"] == "7.5%"
        assert display["tax_amount"] == "₦7.50"
        assert display["total"] == "₦107.51"
        assert display["status"] == "Unpaid"
        assert service.invoice_view("inv-r").total == Decimal("107.505375")

    def test_status_follows_the_clock(self, service, seeded, clock):
        assert service.invoice_view("inv-1").status is InvoiceStatus.UNPAID
        clock.advance(days=40)
        assert service.invoice_view("inv-1").status is InvoiceStatus.OVERDUE

    def test_invoice_overview_filters_by_parent(self, service, store, make_invoice):
        store.upsert(INVOICES, make_invoice("a", rows=[(1, 100)], parent_id="appt-1"))
        store.upsert(INVOICES, make_invoice("b", rows=[(1, 50)], parent_id="appt-2"))

        assert service.invoice_overview("appt-1").total_billed == Decimal("100")
        assert service.invoice_overview().total_billed == Decimal("150")

    def test_parent_payment_status(self, service, store, make_invoice):
        store.upsert(INVOICES, make_invoice(
            "a", rows=[(1, 100)], parent_id="appt-1", payments=(_payment("p1", 100),)
        ))
        assert service.parent_payment_status("appt-1") is ParentPaymentStatus.PAID
        assert service.parent_payment_status("appt-2") is ParentPaymentStatus.UNPAID

    def test_next_issue_date(self, service, store, make_invoice):
        invoice = replace(
            make_invoice("rec"), recurrence=RecurrenceRule("monthly", date(2025, 1, 1))
        )
        store.upsert(INVOICES, invoice)
        store.upsert(INVOICES, make_invoice("once"))

        assert service.next_issue_date("rec") == date(2025, 2, 1)
        assert service.next_issue_date("rec", after=date(2025, 2, 1)) == date(2025, 3, 1)
        assert service.next_issue_date("once") is None

    def test_invoice_views_list(self, service, seeded):
        (view,) = service.invoice_views()
        assert view.document.id == "inv-1"


class TestRefresh:
    def test_refresh_decodes_server_records(self, service, store):
        service.refresh(INVOICES, [{
            "id": "inv-9",
            "invoice_no": "INV/2025/01/0009",
            "issue_date": "2025-01-02",
            "due_date": "2025-01-10",
            "tax_percentage": "0",
            "discount_percentage": "0",
            "items": [{"id": "l1", "description": "Visit", "quantity": "1", "rate": "300"}],
            "payments": [{
                "id": "p1", "amount": "100", "payment_date": "2025-01-05",
                "payment_method": "CASH",
            }],
            "remaining_balance": "0",
            "status": "Fully Paid",
        }])

        view = service.invoice_view("inv-9")
        assert view.remaining_balance == Decimal("200")
        assert view.status is InvoiceStatus.OVERDUE

    def test_refresh_unknown_collection(self, service):
        with pytest.raises(KeyError):
            service.refresh("expenses", [])

    def test_refresh_while_note_create_in_flight(self, service, store, gateway, arun):
        async def scenario():
            release = gateway.stall(then={"id": "srv-77", "author": "Dr. Ade"})
            task = asyncio.create_task(service.add_note("appt-1", "Bring referral"))
            for _ in range(10):
                await asyncio.sleep(0)
            service.refresh(NOTES, [{
                "id": "srv-77", "parent_id": "appt-1", "content": "Bring referral",
            }])
            release.set()
            return await task

        outcome = arun(scenario())

        assert outcome.committed
        assert [n.id for n in store.items(NOTES)] == ["srv-77"]
        assert store.get(NOTES, "srv-77").author == "Dr. Ade"


class TestFromSettings:
    def test_builds_service_with_notice_board(self, gateway, clock):
        service = BillingService.from_settings(get_active_settings(), gateway, clock)

        assert isinstance(service.notices, NoticeBoard)
        assert service.store.items(INVOICES) == ()
