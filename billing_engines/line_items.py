"""
Module: billing_engines.line_items
Responsibility:
    Ordered collection of line items for one financial document and the
    subtotal over it.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.

Invariants enforced:
    - subtotal == sum(quantity * rate) over all items, order irrelevant.
    - Full Decimal precision; nothing is rounded here.

Failure modes:
    - InvalidLineItemError when an item is out of domain. LineItem
      construction already enforces this; items are re-checked here so
      that values built with ``object.__setattr__`` tricks or decoded by
      other layers cannot slip through.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Iterator

from billing_kernel.domain.values import LineItem
from billing_kernel.exceptions import InvalidLineItemError


def validate_line_item(item: LineItem) -> None:
    if item.quantity <= 0:
        raise InvalidLineItemError(item.id, "quantity", item.quantity, "must be positive")
    if item.rate < 0:
        raise InvalidLineItemError(item.id, "rate", item.rate, "must be non-negative")


@dataclass(frozen=True, init=False)
class LineItemSet:
    """
    Immutable, ordered set of line items.

    Contract:
        Construction validates every item. Order is preserved for display;
        it has no effect on ``subtotal``.
    """

    items: tuple[LineItem, ...] = ()

    def __init__(self, items: Iterable[LineItem] = ()):
        materialized = tuple(items)
        for item in materialized:
            validate_line_item(item)
        object.__setattr__(self, "items", materialized)

    def __iter__(self) -> Iterator[LineItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))

    def amounts(self) -> tuple[tuple[str, Decimal], ...]:
        """(item id, amount) pairs in display order."""
        return tuple((item.id, item.amount) for item in self.items)
