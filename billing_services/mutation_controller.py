"""
billing_services.mutation_controller -- Generic optimistic mutation transaction.

Responsibility:
    Runs every create / update / delete against the system of record as one
    optimistic transaction: snapshot the affected list, apply the change
    locally, dispatch the remote call, then merge the server's answer or
    restore the snapshot. One controller serves every entity type; the
    per-type parts (the local patch, the payload and the merge of server
    fields) arrive inside the ``MutationRequest``.

Architecture position:
    Services -- the only writer of the ReconciliationStore besides a
    reconciled refetch (``apply_refetch``), which also goes through here.

Invariants enforced:
    - SNAPSHOT_ROLLBACK: a failed mutation restores the pre-mutation
      snapshot of its entity, not an inverse of the patch.
    - PER_ENTITY_SERIALIZATION: at most one mutation per (collection, id)
      runs at a time. The next one waits for settlement (``queue``) or is
      refused with MutationInFlightError (``reject``).
    - Settlement always clears the in-flight marker, including on timeout.
    - A refetch never clobbers an entity whose own mutation is in flight.

Failure modes:
    - ValidationError / OverpaymentError raised by the patch propagate to
      the caller before the store is touched.
    - MutationInFlightError under the ``reject`` policy.
    - RemoteRejection / TransportFailure / MutationTimeoutError never
      propagate: they roll back, publish an error Notice and come back in
      the MutationOutcome.
    - A success reply the merge cannot read is a TransportFailure.
    - Any other exception after the local apply, cancellation included,
      restores the slice and then propagates.
    - A create whose server record already arrived through a refetch
      replaces that record instead of adding a second one with its id.

Usage:
    controller = OptimisticMutationController(store, gateway, settings.mutations)
    outcome = await controller.execute(MutationRequest(
        kind=MutationKind.DELETE,
        collection=NOTES,
        entity_id=note.id,
        patch=lambda current: None,
    ))
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from billing_config.schema import InFlightPolicy, MutationSettings, RemoteOperation
from billing_kernel.exceptions import (
    MutationFailure,
    MutationInFlightError,
    MutationTimeoutError,
    TransportFailure,
)
from billing_kernel.invariants import EngineInvariant
from billing_kernel.logging_config import LogContext, get_logger
from billing_services.notifications import Notice, NoticeLevel, NotificationSink
from billing_services.remote import RemoteGateway, dispatch
from billing_services.store import ReconciliationStore

logger = get_logger("services.mutation_controller")

EntityKey = tuple[str, str]


class MutationKind(str, Enum):
    """Remote operation a mutation performs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def operation(self) -> RemoteOperation:
        return RemoteOperation(self.value)


class MutationStatus(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class MutationRequest:
    """
    One optimistic mutation of the entity ``collection/entity_id``.

    ``patch`` maps the entity's current value (None if absent) to its
    post-mutation value (None to remove it). It runs after any queued
    mutation on the same entity has settled, so it always sees current
    state, and it may raise ValidationError / OverpaymentError to refuse.

    ``payload`` builds the remote payload from the patched value.
    ``merge`` folds the server's reply into the patched value; it may
    change the id (placeholder to authoritative id).

    ``remote_collection`` / ``remote_id`` address the remote record when
    it differs from the local entity, e.g. a payment nested in an invoice.
    """

    kind: MutationKind
    collection: str
    entity_id: str
    patch: Callable[[Any | None], Any | None]
    payload: Callable[[Any | None], Mapping[str, Any]] | None = None
    merge: Callable[[Any, dict[str, Any]], Any] | None = None
    remote_collection: str | None = None
    remote_id: str | None = None
    success_message: str | None = None
    mutation_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def key(self) -> EntityKey:
        return (self.collection, self.entity_id)


@dataclass(frozen=True)
class MutationOutcome:
    mutation_id: str
    status: MutationStatus
    entity: Any | None = None
    server_data: dict[str, Any] = field(default_factory=dict)
    error: MutationFailure | None = None

    @property
    def committed(self) -> bool:
        return self.status is MutationStatus.COMMITTED

    @property
    def rolled_back(self) -> bool:
        return self.status is MutationStatus.ROLLED_BACK


class OptimisticMutationController:
    """
    Per-entity serialized optimistic transactions over a ReconciliationStore.

    Contract:
        All store writes happen synchronously between awaits, so on a
        single event loop a snapshot/apply/rollback/merge is atomic with
        respect to every other mutation. The only suspension point is the
        remote call.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        gateway: RemoteGateway,
        settings: MutationSettings | None = None,
        notifier: NotificationSink | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._settings = settings or MutationSettings()
        self._notifier = notifier
        self._locks: dict[EntityKey, asyncio.Lock] = {}
        self._waiters: dict[EntityKey, int] = {}
        self._in_flight: dict[EntityKey, str] = {}

    @property
    def store(self) -> ReconciliationStore:
        return self._store

    @property
    def notifier(self) -> NotificationSink | None:
        return self._notifier

    def in_flight(self, collection: str, entity_id: str) -> bool:
        return (collection, entity_id) in self._in_flight

    def in_flight_ids(self, collection: str) -> frozenset[str]:
        return frozenset(eid for (c, eid) in self._in_flight if c == collection)

    def pending(self, collection: str, entity_id: str) -> int:
        """Mutations on the entity that are running or queued."""
        return self._waiters.get((collection, entity_id), 0)

    # -- execute -------------------------------------------------------------

    async def execute(self, request: MutationRequest) -> MutationOutcome:
        key = request.key
        with LogContext.bind(
            mutation_id=request.mutation_id,
            entity_id=request.entity_id,
            collection=request.collection,
        ):
            lock = self._locks.get(key)
            if (
                self._settings.in_flight_policy is InFlightPolicy.REJECT
                and lock is not None
                and lock.locked()
            ):
                running = self._in_flight.get(key, "")
                logger.warning(
                    "mutation_rejected_in_flight",
                    extra={
                        "in_flight_mutation_id": running,
                        "invariant": EngineInvariant.PER_ENTITY_SERIALIZATION.value,
                    },
                )
                raise MutationInFlightError(request.collection, request.entity_id, running)

            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            self._waiters[key] = self._waiters.get(key, 0) + 1
            try:
                async with lock:
                    return await self._run(request)
            finally:
                self._waiters[key] -= 1
                if not self._waiters[key]:
                    del self._waiters[key]
                    del self._locks[key]

    async def _run(self, request: MutationRequest) -> MutationOutcome:
        collection, entity_id = request.key
        before = self._store.find(collection, entity_id)

        # Local refusals happen here, before the store is touched.
        after = request.patch(before)
        payload = request.payload(after) if request.payload is not None else None

        snapshot = self._store.snapshot_slice(collection, entity_id)
        self._in_flight[request.key] = request.mutation_id
        logger.info("mutation_begun", extra={"kind": request.kind.value})
        failure: MutationFailure | None = None
        try:
            self._apply(collection, entity_id, before, after)
            logger.debug("mutation_applied", extra={"kind": request.kind.value})

            try:
                data = await asyncio.wait_for(
                    dispatch(
                        self._gateway,
                        request.kind.operation,
                        request.remote_collection or collection,
                        None if request.kind is MutationKind.CREATE
                        else request.remote_id or entity_id,
                        payload,
                    ),
                    timeout=self._settings.timeout_seconds,
                )
                entity = self._merge(request, after, data)
            except asyncio.TimeoutError:
                failure = MutationTimeoutError(self._settings.timeout_seconds)
            except MutationFailure as exc:
                failure = exc
        except BaseException as exc:
            # Anything else, cancellation included, still leaves the store
            # as it was before the optimistic patch.
            self._store.restore_slice(snapshot)
            logger.error(
                "mutation_aborted",
                extra={
                    "kind": request.kind.value,
                    "error_type": type(exc).__name__,
                    "invariant": EngineInvariant.SNAPSHOT_ROLLBACK.value,
                },
            )
            raise
        finally:
            del self._in_flight[request.key]

        if failure is not None:
            return self._rollback(request, snapshot, failure)
        return self._commit(request, entity, data)

    def _apply(self, collection: str, entity_id: str, before: Any | None, after: Any | None) -> None:
        if after is None:
            if before is not None:
                self._store.remove(collection, entity_id)
            return
        self._store.upsert(collection, after, at_front=before is None)

    @staticmethod
    def _merge(request: MutationRequest, after: Any | None, data: dict[str, Any]) -> Any | None:
        """Fold the server reply in. A reply that cannot be merged counts as no reply."""
        if after is None or request.merge is None:
            return after
        try:
            return request.merge(after, data)
        except Exception as exc:
            raise TransportFailure(f"unusable reply from server: {exc}") from exc

    def _place(self, collection: str, entity_id: str, entity: Any) -> None:
        server_id = getattr(entity, "id", entity_id)
        if server_id != entity_id and self._store.contains(collection, server_id):
            # A refetch already delivered this record under its server id.
            if self._store.contains(collection, entity_id):
                self._store.remove(collection, entity_id)
            self._store.upsert(collection, entity)
        elif self._store.contains(collection, entity_id):
            self._store.rekey(collection, entity_id, entity)
        else:
            self._store.upsert(collection, entity, at_front=True)

    def _commit(
        self, request: MutationRequest, entity: Any | None, data: dict[str, Any]
    ) -> MutationOutcome:
        collection, entity_id = request.key
        if entity is not None:
            self._place(collection, entity_id, entity)

        logger.info(
            "mutation_committed",
            extra={
                "kind": request.kind.value,
                "server_id": getattr(entity, "id", entity_id),
            },
        )
        if request.success_message:
            self._publish(Notice(
                level=NoticeLevel.SUCCESS,
                message=request.success_message,
                mutation_id=request.mutation_id,
            ))
        return MutationOutcome(
            mutation_id=request.mutation_id,
            status=MutationStatus.COMMITTED,
            entity=entity,
            server_data=data,
        )

    def _rollback(
        self, request: MutationRequest, snapshot: Any, failure: MutationFailure
    ) -> MutationOutcome:
        self._store.restore_slice(snapshot)
        logger.warning(
            "mutation_rolled_back",
            extra={
                "kind": request.kind.value,
                "error_code": failure.code,
                "retryable": failure.retryable,
                "reason": str(failure),
                "invariant": EngineInvariant.SNAPSHOT_ROLLBACK.value,
            },
        )
        self._publish(Notice(
            level=NoticeLevel.ERROR,
            message=failure.user_message,
            code=failure.code,
            retryable=failure.retryable,
            mutation_id=request.mutation_id,
        ))
        return MutationOutcome(
            mutation_id=request.mutation_id,
            status=MutationStatus.ROLLED_BACK,
            entity=snapshot.before,
            error=failure,
        )

    def _publish(self, notice: Notice) -> None:
        if self._notifier is not None:
            self._notifier.publish(notice)

    # -- refetch -------------------------------------------------------------

    def apply_refetch(self, collection: str, entities: Iterable[Any]) -> None:
        """
        Replace a list with fresh server data without clobbering in-flight work.

        For every entity whose mutation is still in flight the local value
        wins: an updated entity keeps its optimistic value at the server's
        position, a pending create stays at the front, and a pending delete
        stays absent.
        """
        fresh = list(entities)
        pending = self.in_flight_ids(collection)
        if not pending:
            self._store.replace_collection(collection, fresh)
            logger.info(
                "refetch_reconciled",
                extra={"refetch_collection": collection, "count": len(fresh), "deferred": 0},
            )
            return

        local = {e.id: e for e in self._store.items(collection)}
        fresh_ids = {e.id for e in fresh}
        creates = [
            e for e in self._store.items(collection)
            if e.id in pending and e.id not in fresh_ids
        ]
        merged = list(creates)
        for entity in fresh:
            if entity.id not in pending:
                merged.append(entity)
            elif entity.id in local:
                merged.append(local[entity.id])

        self._store.replace_collection(collection, merged)
        logger.info(
            "refetch_reconciled",
            extra={
                "refetch_collection": collection,
                "count": len(merged),
                "deferred": len(pending),
            },
        )
