"""
Settings schema (``billing_config.schema``).

Frozen dataclasses describing the parsed configuration. Instances are
produced only by ``billing_config.loader``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class InFlightPolicy(str, Enum):
    """What to do with a mutation on an entity that already has one in flight."""

    QUEUE = "queue"
    REJECT = "reject"


class RemoteOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class EngineSettings:
    overpayment_epsilon: Decimal = Decimal("0.005")
    display_places: int = 2
    currency_symbol: str = "₦"


@dataclass(frozen=True)
class MutationSettings:
    timeout_seconds: float = 15.0
    in_flight_policy: InFlightPolicy = InFlightPolicy.QUEUE
    notice_history: int = 50


@dataclass(frozen=True)
class RemoteSettings:
    """
    Where the system of record lives.

    ``routes`` maps collection -> operation -> path template. Templates
    are formatted with ``id`` and the payload's fields, for example
    ``professionals/invoices/recordPayment/{invoice_id}``.
    """

    base_url: str
    request_timeout_seconds: float = 10.0
    refresh_path: str = "auth/refresh"
    routes: dict[str, dict[RemoteOperation, str]] = field(default_factory=dict)

    def route(self, collection: str, operation: RemoteOperation) -> str | None:
        return self.routes.get(collection, {}).get(operation)


@dataclass(frozen=True)
class BillingSettings:
    engine: EngineSettings
    mutations: MutationSettings
    remote: RemoteSettings
    checksum: str = ""
