"""
Typed Exception Hierarchy for the Billing Engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BillingEngineError:

    BillingEngineError (base)
    |
    +-- ValidationError                  (local, never dispatched)
    |   +-- InvalidLineItemError
    |   +-- InvalidPercentageError
    |   +-- NegativeTotalError
    |   +-- InvalidPaymentError
    |   +-- InvalidStatusTransitionError
    |
    +-- OverpaymentError                 (local, computed by the ledger)
    |
    +-- StoreError
    |   +-- EntityNotFoundError
    |
    +-- ConcurrencyError
    |   +-- MutationInFlightError
    |
    +-- MutationFailure                  (remote, always rolled back)
    |   +-- RemoteRejection
    |   +-- TransportFailure
    |       +-- MutationTimeoutError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                      | When Raised
-------------|---------------------------|--------------------------------------
Validation   | INVALID_LINE_ITEM         | quantity <= 0 or rate < 0
             | INVALID_PERCENTAGE        | tax or discount percentage < 0
             | NEGATIVE_TOTAL            | discount drives the total below zero
             | INVALID_PAYMENT           | payment amount <= 0, payment on quote
             | INVALID_STATUS_TRANSITION | quotation already accepted/rejected
-------------|---------------------------|--------------------------------------
Ledger       | OVERPAYMENT               | new payment exceeds outstanding balance
-------------|---------------------------|--------------------------------------
Store        | ENTITY_NOT_FOUND          | id not present in the store
-------------|---------------------------|--------------------------------------
Concurrency  | MUTATION_IN_FLIGHT        | second mutation on a busy entity
             |                           | under the "reject" policy
-------------|---------------------------|--------------------------------------
Remote       | REMOTE_REJECTION          | non-2xx response or status:false
             | TRANSPORT_FAILURE         | no usable response
             | MUTATION_TIMEOUT          | remote call exceeded the timeout
-------------|---------------------------|--------------------------------------
Config       | CONFIGURATION_ERROR       | settings file holds invalid values

===============================================================================
HANDLING PATTERNS
===============================================================================

Validation and overpayment errors are raised before the store is touched.
Callers catch them and show an inline message:

    try:
        await service.record_payment(invoice_id, amount=amount, ...)
    except OverpaymentError as e:
        show_inline(f"Only {e.remaining_balance} is outstanding")

Remote failures never escape the mutation controller. They are rolled
back, published as a Notice and returned on the MutationOutcome:

    outcome = await service.delete_payment(invoice_id, payment_id)
    if outcome.rolled_back:
        offer_retry(outcome.error.user_message)
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping


class BillingEngineError(Exception):
    """
    Base exception for all billing engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "BILLING_ENGINE_ERROR"


# Validation (local)


class ValidationError(BillingEngineError):
    """Base exception for values outside their domain."""

    code: str = "VALIDATION_ERROR"


class InvalidLineItemError(ValidationError):
    """Line item quantity or rate is out of domain."""

    code: str = "INVALID_LINE_ITEM"

    def __init__(self, item_id: str, field: str, value: Any, reason: str):
        self.item_id = item_id
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid line item {item_id}: {field}={value} ({reason})")


class InvalidPercentageError(ValidationError):
    """Tax or discount percentage is out of domain."""

    code: str = "INVALID_PERCENTAGE"

    def __init__(self, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(f"{field} must be a non-negative percentage, got {value}")


class NegativeTotalError(ValidationError):
    """Discount exceeds subtotal plus tax."""

    code: str = "NEGATIVE_TOTAL"

    def __init__(self, subtotal: Decimal, tax_amount: Decimal, discount_amount: Decimal):
        self.subtotal = subtotal
        self.tax_amount = tax_amount
        self.discount_amount = discount_amount
        super().__init__(
            f"Total would be negative: subtotal={subtotal}, "
            f"tax={tax_amount}, discount={discount_amount}"
        )


class InvalidPaymentError(ValidationError):
    """Payment is malformed or targets a document that cannot take one."""

    code: str = "INVALID_PAYMENT"

    def __init__(self, payment_id: str | None, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Invalid payment {payment_id}: {reason}")


class InvalidStatusTransitionError(ValidationError):
    """Quotation status transition is not allowed."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, from_status: str, action: str):
        self.from_status = from_status
        self.action = action
        super().__init__(f"Cannot {action} a quotation in status {from_status}")


# Ledger (local, computed)


class OverpaymentError(BillingEngineError):
    """
    A new payment would drive the remaining balance below zero.

    The engine only reports the condition; callers decide whether to block
    the action or warn.
    """

    code: str = "OVERPAYMENT"

    def __init__(
        self,
        document_id: str | None,
        amount: Decimal,
        remaining_balance: Decimal,
    ):
        self.document_id = document_id
        self.amount = amount
        self.remaining_balance = remaining_balance
        self.excess = amount - remaining_balance
        super().__init__(
            f"Payment of {amount} exceeds outstanding balance {remaining_balance} "
            f"on document {document_id}"
        )


# Store


class StoreError(BillingEngineError):
    """Base exception for reconciliation store errors."""

    code: str = "STORE_ERROR"


class EntityNotFoundError(StoreError):
    """Entity is not present in the store."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, collection: str, entity_id: str):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"{collection} entity not found: {entity_id}")


# Concurrency


class ConcurrencyError(BillingEngineError):
    """Base exception for overlapping in-flight mutations."""

    code: str = "CONCURRENCY_ERROR"


class MutationInFlightError(ConcurrencyError):
    """A mutation on the same entity has not settled yet."""

    code: str = "MUTATION_IN_FLIGHT"

    def __init__(self, collection: str, entity_id: str, in_flight_mutation_id: str):
        self.collection = collection
        self.entity_id = entity_id
        self.in_flight_mutation_id = in_flight_mutation_id
        super().__init__(
            f"Mutation {in_flight_mutation_id} on {collection}/{entity_id} is still in flight"
        )


# Remote failures (rolled back by the mutation controller)


class MutationFailure(BillingEngineError):
    """Base exception for remote failures. Always triggers rollback."""

    code: str = "MUTATION_FAILURE"
    retryable: bool = True

    @property
    def user_message(self) -> str:
        return str(self)


class RemoteRejection(MutationFailure):
    """
    Server reported failure: non-2xx status or a body with ``status: false``.

    ``field_errors`` maps field name to a list of messages, as returned by
    the server's validation layer.
    """

    code: str = "REMOTE_REJECTION"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        field_errors: Mapping[str, list[str]] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.field_errors = dict(field_errors or {})
        super().__init__(message)

    @property
    def user_message(self) -> str:
        for messages in self.field_errors.values():
            if messages:
                return messages[0]
        return self.message


class TransportFailure(MutationFailure):
    """No usable response arrived (connection error, unreadable body)."""

    code: str = "TRANSPORT_FAILURE"

    GENERIC_MESSAGE = "Could not reach the server. Please try again."

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Transport failure: {reason}")

    @property
    def user_message(self) -> str:
        return self.GENERIC_MESSAGE


class MutationTimeoutError(TransportFailure):
    """Remote call did not settle within the configured timeout."""

    code: str = "MUTATION_TIMEOUT"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"no response within {timeout_seconds}s")


# Configuration


class ConfigurationError(BillingEngineError):
    """Settings file holds an invalid value."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid setting {key}: {reason}")
