"""
Module: billing_services
Responsibility:
    Stateful shell around the pure engines: the ReconciliationStore, the
    generic OptimisticMutationController, remote gateways, wire codecs,
    user notices and the BillingService facade views call.

Architecture position:
    Services -- may import billing_kernel, billing_engines and
    billing_config. Nothing below this layer imports it.

Usage:
    from billing_services import BillingService, HttpRemoteGateway, InMemoryCredentials

    gateway = HttpRemoteGateway(settings.remote, InMemoryCredentials(token))
    service = BillingService.from_settings(settings, gateway)
"""

from billing_services.billing_service import PAYMENTS, BillingService, InvoiceView
from billing_services.http_gateway import (
    CredentialProvider,
    HttpRemoteGateway,
    InMemoryCredentials,
)
from billing_services.mutation_controller import (
    MutationKind,
    MutationOutcome,
    MutationRequest,
    MutationStatus,
    OptimisticMutationController,
)
from billing_services.notifications import Notice, NoticeBoard, NoticeLevel, NotificationSink
from billing_services.remote import RemoteGateway, dispatch, interpret_response
from billing_services.store import (
    ATTACHMENTS,
    INVOICES,
    NOTES,
    QUOTATIONS,
    ReconciliationStore,
    SliceSnapshot,
    StoreSnapshot,
)

__all__ = [
    "ATTACHMENTS",
    "BillingService",
    "CredentialProvider",
    "HttpRemoteGateway",
    "INVOICES",
    "InMemoryCredentials",
    "InvoiceView",
    "MutationKind",
    "MutationOutcome",
    "MutationRequest",
    "MutationStatus",
    "NOTES",
    "Notice",
    "NoticeBoard",
    "NoticeLevel",
    "NotificationSink",
    "OptimisticMutationController",
    "PAYMENTS",
    "QUOTATIONS",
    "ReconciliationStore",
    "RemoteGateway",
    "SliceSnapshot",
    "StoreSnapshot",
    "dispatch",
    "interpret_response",
]
