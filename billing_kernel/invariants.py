"""
Engine Invariants Contract.

These invariants are structural law for the billing engine and the
mutation protocol built on top of it. No setting in ``billing_config``
may switch them off.

This module declares them explicitly. Enforcement is
distributed across the charge calculator, the payment ledger, the status
resolver, the reconciliation store and the mutation controller; the log
events they emit when a rule fires carry the value under ``invariant``.
"""

from enum import Enum, unique


@unique
class EngineInvariant(str, Enum):
    """Non-configurable invariants enforced by the billing engine."""

    DERIVED_STATUS = "derived_status"
    """Invoice status is recomputed from current items, payments and the
    clock at read time. It is never stored on a document."""

    FULL_PRECISION = "full_precision"
    """Summaries and balances keep full Decimal precision. Rounding
    happens only in billing_engines.presentation."""

    NON_NEGATIVE_TOTAL = "non_negative_total"
    """A negative total is rejected by the charge calculator, never
    clamped."""

    NO_SILENT_OVERPAYMENT = "no_silent_overpayment"
    """A payment that drives the balance below zero beyond the configured
    epsilon is reported as OverpaymentError before dispatch."""

    SNAPSHOT_ROLLBACK = "snapshot_rollback"
    """A failed mutation restores the captured pre-mutation slice, never a
    computed inverse of the optimistic patch."""

    PER_ENTITY_SERIALIZATION = "per_entity_serialization"
    """At most one mutation per entity is in flight; later requests are
    queued or rejected according to the in-flight policy."""

    REPLACE_WHOLE_ENTITY = "replace_whole_entity"
    """Store entries are immutable values replaced as a whole; nothing is
    patched in place."""


ALL_ENGINE_INVARIANTS: frozenset[EngineInvariant] = frozenset(EngineInvariant)

# The kernel package may not import from these packages.
# Enforced by tests/architecture/test_layer_boundaries.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "billing_engines",
    "billing_config",
    "billing_services",
    "billing_server",
)
