"""
Tests for the line item set and the charge calculator.

Covers:
- Subtotal as the sum of quantity x rate, independent of order
- Tax and discount applied to the subtotal at full precision
- Rejection of negative percentages and negative totals
- Engine trace emission
"""

from decimal import Decimal

import pytest

from billing_engines import LineItemSet, compute_summary, summarize_document
from billing_kernel.domain import LineItem, line_items
from billing_kernel.exceptions import (
    InvalidLineItemError,
    InvalidPercentageError,
    NegativeTotalError,
    ValidationError,
)
from billing_kernel.invariants import EngineInvariant


@pytest.fixture
def consultation_items():
    return line_items([
        {"id": "l1", "description": "Consultation", "quantity": 2, "rate": 500},
        {"id": "l2", "description": "Materials", "quantity": 1, "rate": 1000},
    ])


# ============================================================================
# LineItemSet
# ============================================================================


class TestLineItemSet:
    def test_subtotal_sums_quantity_times_rate(self, consultation_items):
        assert LineItemSet(consultation_items).subtotal == Decimal("2000")

    def test_empty_set_has_zero_subtotal(self):
        assert LineItemSet().subtotal == Decimal("0")
        assert len(LineItemSet()) == 0

    def test_order_does_not_change_subtotal(self, consultation_items):
        reversed_set = LineItemSet(reversed(consultation_items))
        assert reversed_set.subtotal == LineItemSet(consultation_items).subtotal

    def test_order_is_preserved_for_display(self, consultation_items):
        assert [i.id for i in LineItemSet(consultation_items)] == ["l1", "l2"]

    def test_amounts_pairs_ids_with_line_amounts(self, consultation_items):
        assert LineItemSet(consultation_items).amounts() == (
            ("l1", Decimal("1000")),
            ("l2", Decimal("1000")),
        )

    def test_fractional_quantities_keep_full_precision(self):
        items = line_items([{"quantity": "0.333", "rate": "3.03"}])
        assert LineItemSet(items).subtotal == Decimal("1.00899")

    def test_zero_rate_is_allowed(self):
        items = line_items([{"quantity": 3, "rate": 0}])
        assert LineItemSet(items).subtotal == Decimal("0")


class TestLineItemValidation:
    def test_zero_quantity_rejected(self):
        with pytest.raises(InvalidLineItemError) as exc_info:
            LineItem(id="l1", description="", quantity=0, rate=10)
        assert exc_info.value.field == "quantity"
        assert exc_info.value.code == "INVALID_LINE_ITEM"

    def test_negative_rate_rejected(self):
        with pytest.raises(InvalidLineItemError) as exc_info:
            LineItem(id="l1", description="", quantity=1, rate=-1)
        assert exc_info.value.field == "rate"

    def test_float_inputs_become_decimal(self):
        item = LineItem(id="l1", description="", quantity=0.1, rate=3)
        assert item.quantity == Decimal("0.1")
        assert isinstance(item.amount, Decimal)

    def test_currency_strings_are_not_parsed(self):
        with pytest.raises(ValidationError):
            LineItem(id="l1", description="", quantity=1, rate="₦1,000")

    def test_non_finite_values_rejected(self):
        with pytest.raises(ValidationError):
            LineItem(id="l1", description="", quantity=1, rate="NaN")

    def test_line_items_helper_assigns_placeholder_ids(self):
        (item,) = line_items([{"quantity": 1, "rate": 5}])
        assert item.id.startswith("tmp-")


# ============================================================================
# ChargeCalculator
# ============================================================================


class TestComputeSummary:
    def test_reference_figures(self, consultation_items):
        summary = compute_summary(consultation_items, 5, 10)

        assert summary.subtotal == Decimal("2000")
        assert summary.tax_amount == Decimal("100")
        assert summary.discount_amount == Decimal("200")
        assert summary.total == Decimal("1900")

    def test_total_identity_holds_exactly(self):
        items = line_items([{"quantity": "3", "rate": "33.33"}])
        summary = compute_summary(items, "7.5", "2.25")

        assert summary.total == summary.subtotal + summary.tax_amount - summary.discount_amount
        assert summary.tax_amount == Decimal("7.49925")

    def test_nothing_is_rounded(self):
        items = line_items([{"quantity": 1, "rate": "0.01"}])
        summary = compute_summary(items, "33.333")
        assert summary.tax_amount == Decimal("0.0033333")

    def test_defaults_to_no_tax_or_discount(self, consultation_items):
        summary = compute_summary(consultation_items)
        assert summary.total == summary.subtotal == Decimal("2000")
        assert summary.tax_percentage == Decimal("0")

    def test_percentages_accept_strings(self, consultation_items):
        summary = compute_summary(consultation_items, "5", "10")
        assert summary.tax_percentage == Decimal("5")
        assert summary.discount_percentage == Decimal("10")

    def test_full_discount_gives_tax_only_total(self, consultation_items):
        summary = compute_summary(consultation_items, 5, 100)
        assert summary.total == Decimal("100")

    def test_empty_document_totals_zero(self):
        assert compute_summary([], 5, 10).total == Decimal("0")

    def test_negative_tax_rejected(self, consultation_items):
        with pytest.raises(InvalidPercentageError) as exc_info:
            compute_summary(consultation_items, -1, 0)
        assert exc_info.value.field == "tax_percentage"

    def test_negative_discount_rejected(self, consultation_items):
        with pytest.raises(InvalidPercentageError) as exc_info:
            compute_summary(consultation_items, 0, "-0.5")
        assert exc_info.value.field == "discount_percentage"

    def test_discount_beyond_total_is_rejected_not_clamped(self, consultation_items):
        with pytest.raises(NegativeTotalError) as exc_info:
            compute_summary(consultation_items, 5, 120)
        assert exc_info.value.code == "NEGATIVE_TOTAL"
        assert exc_info.value.discount_amount == Decimal("2400")

    def test_summarize_document_uses_document_fields(self, make_invoice):
        invoice = make_invoice(tax=5, discount=10)
        assert summarize_document(invoice).total == Decimal("1900")


class TestChargeTracing:
    def test_emits_engine_trace(self, captured_logs, consultation_items):
        compute_summary(consultation_items, 5, 10)

        traces = [r for r in captured_logs() if r["message"] == "BILLING_ENGINE_TRACE"]
        assert traces
        assert traces[-1]["engine_name"] == "charges"
        assert len(traces[-1]["input_fingerprint"]) == 16

    def test_fingerprint_ignores_argument_style(self, captured_logs, consultation_items):
        compute_summary(consultation_items, 5, 10)
        compute_summary(
            items=consultation_items, tax_percentage=5, discount_percentage=10
        )

        fingerprints = [
            r["input_fingerprint"]
            for r in captured_logs()
            if r["message"] == "BILLING_ENGINE_TRACE" and r["engine_name"] == "charges"
        ]
        assert len(fingerprints) == 2
        assert fingerprints[0] == fingerprints[1]

    def test_negative_total_is_logged(self, captured_logs, consultation_items):
        with pytest.raises(NegativeTotalError):
            compute_summary(consultation_items, 0, 150)

        assert any(r["message"] == "negative_total_rejected" for r in captured_logs())

    def test_negative_total_log_names_the_rule(self, captured_logs, consultation_items):
        with pytest.raises(NegativeTotalError):
            compute_summary(consultation_items, 0, 150)

        (event,) = [r for r in captured_logs() if r["message"] == "negative_total_rejected"]
        assert event["invariant"] == EngineInvariant.NON_NEGATIVE_TOTAL.value
