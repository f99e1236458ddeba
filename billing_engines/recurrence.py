"""
Module: billing_engines.recurrence
Responsibility:
    Issue dates of a recurring invoice. Weekly schedules issue every
    Monday; monthly schedules issue on the first day of each month. Both
    ends of the window are inclusive.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Failure modes:
    - ValueError from ``occurrences`` on an open-ended rule without a
      ``limit``.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterator

from billing_kernel.domain.values import RecurrenceFrequency, RecurrenceRule

_MONDAY = 0


def _first_on_or_after(rule: RecurrenceRule, day: date) -> date:
    if rule.frequency is RecurrenceFrequency.WEEKLY:
        return day + timedelta(days=(_MONDAY - day.weekday()) % 7)
    if day.day == 1:
        return day
    return _add_month(day.replace(day=1))


def _add_month(first_of_month: date) -> date:
    if first_of_month.month == 12:
        return first_of_month.replace(year=first_of_month.year + 1, month=1)
    return first_of_month.replace(month=first_of_month.month + 1)


def _step(rule: RecurrenceRule, current: date) -> date:
    if rule.frequency is RecurrenceFrequency.WEEKLY:
        return current + timedelta(days=7)
    return _add_month(current)


def iter_occurrences(rule: RecurrenceRule) -> Iterator[date]:
    """Lazily yield issue dates; unbounded when the rule has no end date."""
    current = _first_on_or_after(rule, rule.start_date)
    while rule.end_date is None or current <= rule.end_date:
        yield current
        current = _step(rule, current)


def occurrences(rule: RecurrenceRule, limit: int | None = None) -> tuple[date, ...]:
    """All issue dates in the window, or the first ``limit`` of them."""
    if rule.end_date is None and limit is None:
        raise ValueError("open-ended recurrence requires a limit")
    result: list[date] = []
    for day in iter_occurrences(rule):
        if limit is not None and len(result) >= limit:
            break
        result.append(day)
    return tuple(result)


def next_occurrence(rule: RecurrenceRule, after: date) -> date | None:
    """First issue date strictly after ``after``; None once the window has closed."""
    candidate = _first_on_or_after(rule, max(rule.start_date, after + timedelta(days=1)))
    if rule.end_date is not None and candidate > rule.end_date:
        return None
    return candidate
