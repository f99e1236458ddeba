"""
Pytest fixtures for the billing ledger test suite.

Provides:
- Structured logging configured for every test, plus captured JSON logs
- A deterministic clock, an empty reconciliation store
- ScriptedGateway: an in-memory RemoteGateway whose replies, failures and
  stalls are scripted per call
- A BillingService wired to the scripted gateway
- A RecordGateway backed by in-memory SQLite
"""

import asyncio
import itertools
import json
import logging
from collections import deque
from datetime import date
from io import StringIO
from typing import Any, Mapping

import pytest

from billing_config.schema import EngineSettings, InFlightPolicy, MutationSettings
from billing_kernel.domain import DeterministicClock, DocumentKind, FinancialDocument, line_items
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_server import RecordGateway
from billing_server.db import create_tables, drop_tables, init_engine_from_url, reset_engine
from billing_services import (
    BillingService,
    NoticeBoard,
    OptimisticMutationController,
    ReconciliationStore,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            ...
            logs = captured_logs()
            assert any(r["message"] == "mutation_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Scripted remote gateway
# =============================================================================


class _Stall:
    """Hold a call until ``release`` is set, then answer with ``then``."""

    def __init__(self, then: Any = None):
        self.release = asyncio.Event()
        self.then = then


class ScriptedGateway:
    """
    RemoteGateway double.

    Each call consumes the next scripted outcome: a dict (reply data), an
    exception instance (raised), or a stall. With nothing scripted it
    echoes the payload back, assigning ``srv-<n>`` ids to creates.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, str | None, dict | None]] = []
        self._outcomes: deque[Any] = deque()
        self._ids = itertools.count(1)

    def reply(self, data: Mapping[str, Any]) -> None:
        self._outcomes.append(dict(data))

    def fail(self, exc: Exception) -> None:
        self._outcomes.append(exc)

    def stall(self, then: Any = None) -> asyncio.Event:
        """Script a call that waits; set the returned event to let it finish."""
        stall = _Stall(then)
        self._outcomes.append(stall)
        return stall.release

    async def create(self, collection, payload):
        return await self._respond("create", collection, None, payload)

    async def update(self, collection, entity_id, payload):
        return await self._respond("update", collection, entity_id, payload)

    async def delete(self, collection, entity_id):
        return await self._respond("delete", collection, entity_id, None)

    async def _respond(self, operation, collection, entity_id, payload):
        self.calls.append((operation, collection, entity_id, dict(payload) if payload else None))
        outcome = self._outcomes.popleft() if self._outcomes else None
        if isinstance(outcome, _Stall):
            await outcome.release.wait()
            outcome = outcome.then
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return dict(outcome)
        if operation == "create":
            return {**(payload or {}), "id": f"srv-{next(self._ids)}"}
        if operation == "update":
            return {**(payload or {}), "id": entity_id}
        return {"id": entity_id}


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    """Fixed at 2025-01-15 09:00 UTC."""
    return DeterministicClock()


@pytest.fixture
def store() -> ReconciliationStore:
    return ReconciliationStore()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def notices() -> NoticeBoard:
    return NoticeBoard()


@pytest.fixture
def mutation_settings() -> MutationSettings:
    return MutationSettings(timeout_seconds=1.0, in_flight_policy=InFlightPolicy.QUEUE)


@pytest.fixture
def controller(store, gateway, mutation_settings, notices) -> OptimisticMutationController:
    return OptimisticMutationController(store, gateway, mutation_settings, notices)


@pytest.fixture
def service(controller, clock) -> BillingService:
    return BillingService(controller, clock, EngineSettings())


@pytest.fixture
def make_invoice():
    """Build a saved invoice: ``make_invoice("inv-1", [(2, 500), (1, 1000)], tax=5)``."""

    def _make(
        invoice_id: str = "inv-1",
        rows: list[tuple[Any, Any]] = ((2, 500), (1, 1000)),
        tax: Any = 0,
        discount: Any = 0,
        due_date: date = date(2025, 2, 15),
        payments: tuple = (),
        parent_id: str | None = "appt-1",
    ) -> FinancialDocument:
        return FinancialDocument(
            id=invoice_id,
            kind=DocumentKind.INVOICE,
            document_number=f"INV/2025/01/{invoice_id}",
            issue_date=date(2025, 1, 10),
            due_date=due_date,
            items=line_items(
                {"id": f"{invoice_id}-line-{i}", "description": f"Item {i}", "quantity": q, "rate": r}
                for i, (q, r) in enumerate(rows)
            ),
            tax_percentage=tax,
            discount_percentage=discount,
            payments=payments,
            parent_id=parent_id,
        )

    return _make


def run(coro):
    """Drive a coroutine from a synchronous test."""
    return asyncio.run(coro)


@pytest.fixture
def arun():
    return run


# =============================================================================
# Reference server
# =============================================================================


@pytest.fixture
def record_gateway(clock):
    """RecordGateway over a fresh in-memory SQLite database."""
    init_engine_from_url()
    create_tables()
    yield RecordGateway(clock=clock)
    drop_tables()
    reset_engine()
