"""
Transient user-facing notices.

The mutation controller publishes one Notice per settled mutation: a
success confirmation on commit, the failure's user message on rollback.
Views drain the board to show toasts.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from billing_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    message: str
    code: str | None = None
    retryable: bool = False
    mutation_id: str | None = None


class NotificationSink(Protocol):
    def publish(self, notice: Notice) -> None: ...


class NoticeBoard:
    """Bounded, in-memory NotificationSink. Oldest notices fall off first."""

    def __init__(self, capacity: int = 50):
        self._notices: deque[Notice] = deque(maxlen=capacity or None)

    def publish(self, notice: Notice) -> None:
        self._notices.append(notice)
        logger.debug(
            "notice_published",
            extra={"level": notice.level.value, "code": notice.code},
        )

    def __len__(self) -> int:
        return len(self._notices)

    @property
    def latest(self) -> Notice | None:
        return self._notices[-1] if self._notices else None

    def errors(self) -> tuple[Notice, ...]:
        return tuple(n for n in self._notices if n.level is NoticeLevel.ERROR)

    def drain(self) -> tuple[Notice, ...]:
        """Return and forget every notice."""
        drained = tuple(self._notices)
        self._notices.clear()
        return drained
