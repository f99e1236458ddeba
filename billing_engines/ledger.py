"""
Module: billing_engines.ledger
Responsibility:
    PaymentLedger: the date-ordered payments against one invoice, and the
    amount-paid / remaining-balance position they produce against a total.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - amountPaid = sum of payment amounts.
    - remainingBalance = total - amountPaid. No floor is applied: the
      balance may reach exactly zero, and driving it below zero by a new
      payment is reported, not clamped.
    - No running balance is cached. Every position is recomputed from the
      payment set, so removing a payment can never leave a stale balance.

Failure modes:
    - OverpaymentError from ``check_admissible`` when a new payment would
      push the balance below ``-epsilon``.
    - InvalidPaymentError for non-positive amounts or duplicate ids.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Iterator

from billing_kernel.domain.values import Payment, as_decimal
from billing_kernel.exceptions import InvalidPaymentError, OverpaymentError
from billing_kernel.invariants import EngineInvariant
from billing_kernel.logging_config import get_logger
from billing_engines.tracer import traced_engine

logger = get_logger("engines.ledger")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerPosition:
    """Amount paid and remaining balance of one invoice at full precision."""

    total: Decimal
    amount_paid: Decimal
    remaining_balance: Decimal
    payment_count: int

    @property
    def has_payments(self) -> bool:
        return self.payment_count > 0

    @property
    def is_settled(self) -> bool:
        return self.remaining_balance <= 0


class PaymentLedger:
    """
    Ordered-by-date sequence of payments for one document.

    Contract:
        Immutable. ``with_payment`` and ``without_payment`` return new
        ledgers. Payments on the same date keep their insertion order.
    """

    __slots__ = ("_payments", "_document_id")

    def __init__(self, payments: Iterable[Payment] = (), document_id: str | None = None):
        materialized = tuple(payments)
        seen: set[str] = set()
        for p in materialized:
            if p.amount <= 0:
                raise InvalidPaymentError(p.id, f"amount must be positive, got {p.amount}")
            if p.id in seen:
                raise InvalidPaymentError(p.id, "duplicate payment id in ledger")
            seen.add(p.id)
        self._payments = tuple(sorted(materialized, key=lambda p: p.date))
        self._document_id = document_id

    def __iter__(self) -> Iterator[Payment]:
        return iter(self._payments)

    def __len__(self) -> int:
        return len(self._payments)

    def __repr__(self) -> str:
        return f"PaymentLedger(document_id={self._document_id!r}, payments={len(self)})"

    @property
    def payments(self) -> tuple[Payment, ...]:
        return self._payments

    @property
    def document_id(self) -> str | None:
        return self._document_id

    @property
    def amount_paid(self) -> Decimal:
        return sum((p.amount for p in self._payments), _ZERO)

    def apply(self, total: Decimal | int | str) -> LedgerPosition:
        """Position of this ledger against ``total``."""
        total_d = as_decimal(total, "total")
        paid = self.amount_paid
        return LedgerPosition(
            total=total_d,
            amount_paid=paid,
            remaining_balance=total_d - paid,
            payment_count=len(self._payments),
        )

    def check_admissible(
        self,
        amount: Decimal | int | str,
        total: Decimal | int | str,
        epsilon: Decimal = _ZERO,
    ) -> LedgerPosition:
        """
        Verify that a new payment of ``amount`` may be recorded.

        Returns the projected position after the payment. The engine only
        reports the condition; whether to block or warn is the caller's
        decision.

        Raises:
            InvalidPaymentError: amount <= 0.
            OverpaymentError: remaining balance would fall below -epsilon.
        """
        amount_d = as_decimal(amount, "amount")
        if amount_d <= 0:
            raise InvalidPaymentError(None, f"amount must be positive, got {amount_d}")
        current = self.apply(total)
        projected = LedgerPosition(
            total=current.total,
            amount_paid=current.amount_paid + amount_d,
            remaining_balance=current.remaining_balance - amount_d,
            payment_count=current.payment_count + 1,
        )
        if projected.remaining_balance < -epsilon:
            logger.info(
                "overpayment_detected",
                extra={
                    "document_id": self._document_id,
                    "amount": amount_d,
                    "remaining_balance": current.remaining_balance,
                    "invariant": EngineInvariant.NO_SILENT_OVERPAYMENT.value,
                },
            )
            raise OverpaymentError(self._document_id, amount_d, current.remaining_balance)
        return projected

    def with_payment(self, payment: Payment) -> PaymentLedger:
        return PaymentLedger(self._payments + (payment,), self._document_id)

    def without_payment(self, payment_id: str) -> PaymentLedger:
        return PaymentLedger(
            (p for p in self._payments if p.id != payment_id), self._document_id
        )


@traced_engine("ledger", "1.0", fingerprint_fields=("payments", "total"))
def apply_payments(payments: Iterable[Payment], total: Decimal | int | str) -> LedgerPosition:
    """Amount paid and remaining balance of ``payments`` against ``total``."""
    return PaymentLedger(payments).apply(total)
