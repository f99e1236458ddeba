"""
Module: billing_server
Responsibility:
    Reference system of record. Persists invoices, quotations, payments,
    notes and attachments with SQLAlchemy and answers the remote contract
    the mutation controller dispatches through, re-validating every write
    with the same engines the client uses.

Architecture position:
    Server -- may import billing_kernel and billing_engines. MUST NOT
    import billing_services or billing_config.
"""

from billing_server.gateway import RecordGateway, RequestFieldError

__all__ = ["RecordGateway", "RequestFieldError"]
