"""
Remote call shape consumed by the mutation controller.

Transport implementations (``HttpRemoteGateway``, the in-process
``billing_server.RecordGateway``) return the reply's ``data`` dict on
success and raise RemoteRejection / TransportFailure otherwise, both via
``billing_kernel.envelope.interpret_response``.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from billing_config.schema import RemoteOperation
from billing_kernel.envelope import interpret_response


class RemoteGateway(Protocol):
    """Async system-of-record operations. Every call returns the reply's data."""

    async def create(self, collection: str, payload: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, collection: str, entity_id: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    async def delete(self, collection: str, entity_id: str) -> dict[str, Any]: ...


async def dispatch(
    gateway: RemoteGateway,
    operation: RemoteOperation,
    collection: str,
    entity_id: str | None,
    payload: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Route one mutation to the matching gateway call."""
    if operation is RemoteOperation.CREATE:
        return await gateway.create(collection, payload or {})
    if entity_id is None:
        raise ValueError(f"{operation.value} requires an entity id")
    if operation is RemoteOperation.UPDATE:
        return await gateway.update(collection, entity_id, payload or {})
    return await gateway.delete(collection, entity_id)


__all__ = ["RemoteGateway", "dispatch", "interpret_response"]
