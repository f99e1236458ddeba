"""
Canonical workflow types (``billing_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for explicit state machines. The quotation lifecycle
is the only explicit (non-derived) status in the engine, so it is
declared here as data rather than computed.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class QuotationStatus(str, Enum):
    """Explicit quotation status. Set by an action, never computed."""

    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow."""

    from_state: str
    to_state: str
    action: str


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """

    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"initial_state {self.initial_state!r} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(f"transition {t.action!r} references unknown state")
            if t.from_state in self.terminal_states:
                raise ValueError(f"terminal state {t.from_state!r} has a transition")

    def find(self, from_state: str, action: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == from_state and t.action == action:
                return t
        return None


QUOTATION_WORKFLOW = Workflow(
    name="quotation",
    description="Quotation lifecycle: pending until explicitly accepted or rejected",
    initial_state=QuotationStatus.PENDING.value,
    states=(
        QuotationStatus.PENDING.value,
        QuotationStatus.ACCEPTED.value,
        QuotationStatus.REJECTED.value,
    ),
    transitions=(
        Transition(QuotationStatus.PENDING.value, QuotationStatus.ACCEPTED.value, "accept"),
        Transition(QuotationStatus.PENDING.value, QuotationStatus.REJECTED.value, "reject"),
    ),
    terminal_states=(
        QuotationStatus.ACCEPTED.value,
        QuotationStatus.REJECTED.value,
    ),
)
