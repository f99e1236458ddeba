"""
ReconciliationStore -- the in-memory collections the mutation controller mutates.

Responsibility:
    Holds the documents, notes and attachments of the currently viewed
    parent (an Appointment, a Project, or the invoice list) in id-keyed,
    ordered collections. Views read from it; only the mutation controller
    writes to it.

Architecture position:
    Services -- imperative shell around immutable domain values.

Invariants enforced:
    - Replace-whole-entity: entries are frozen values. ``upsert`` swaps
      the value in its slot; nothing is patched in place. This is what
      makes a snapshot a cheap tuple copy and ``restore`` exact.
    - Ids are unique within a collection.
    - A snapshot is immutable; restoring it twice yields the same state.

Failure modes:
    - EntityNotFoundError from ``get`` / ``remove`` / ``rekey`` for an
      unknown id.
    - KeyError for an unknown collection name.

Usage:
    store = ReconciliationStore()
    store.upsert(INVOICES, invoice, at_front=True)
    snap = store.snapshot()
    store.remove(INVOICES, invoice.id)
    store.restore(snap)
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from billing_kernel.exceptions import EntityNotFoundError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.store")

INVOICES = "invoices"
QUOTATIONS = "quotations"
NOTES = "notes"
ATTACHMENTS = "attachments"

DEFAULT_COLLECTIONS: tuple[str, ...] = (INVOICES, QUOTATIONS, NOTES, ATTACHMENTS)


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable copy of every collection."""

    collections: Mapping[str, tuple[Any, ...]]
    version: int


@dataclass(frozen=True)
class SliceSnapshot:
    """
    Immutable copy of the list containing one entity, taken before a
    mutation on that entity.

    ``entities`` is the whole list so that a create (entity absent) or a
    delete (entity present) can be rolled back to its exact position.
    """

    collection: str
    entity_id: str
    entities: tuple[Any, ...]

    @property
    def before(self) -> Any | None:
        """The entity as it was, or None if it did not exist yet."""
        for entity in self.entities:
            if entity.id == self.entity_id:
                return entity
        return None


class ReconciliationStore:
    """
    Ordered, id-keyed collections of immutable entities.

    Contract:
        Touched only from the mutation controller's transaction boundary
        (and ``replace_collection`` for a reconciled refetch). All
        operations are synchronous, so on a single-threaded event loop no
        other mutation can interleave with one of them.
    """

    def __init__(self, collections: Iterable[str] = DEFAULT_COLLECTIONS):
        self._collections: dict[str, list[Any]] = {name: [] for name in collections}
        self._version = 0

    # -- reads ---------------------------------------------------------------

    @property
    def version(self) -> int:
        """Incremented on every change."""
        return self._version

    @property
    def collection_names(self) -> tuple[str, ...]:
        return tuple(self._collections)

    def items(self, collection: str) -> tuple[Any, ...]:
        return tuple(self._list(collection))

    def find(self, collection: str, entity_id: str) -> Any | None:
        for entity in self._list(collection):
            if entity.id == entity_id:
                return entity
        return None

    def get(self, collection: str, entity_id: str) -> Any:
        entity = self.find(collection, entity_id)
        if entity is None:
            raise EntityNotFoundError(collection, entity_id)
        return entity

    def contains(self, collection: str, entity_id: str) -> bool:
        return self.find(collection, entity_id) is not None

    # -- writes --------------------------------------------------------------

    def upsert(self, collection: str, entity: Any, *, at_front: bool = False) -> None:
        """Replace the entity with the same id in its slot, or insert it.

        New entities go to the front when ``at_front`` is set (the newest
        item leads its list), otherwise to the end.
        """
        entities = self._list(collection)
        index = self._index(entities, entity.id)
        if index is not None:
            entities[index] = entity
        elif at_front:
            entities.insert(0, entity)
        else:
            entities.append(entity)
        self._touch()

    def remove(self, collection: str, entity_id: str) -> Any:
        entities = self._list(collection)
        index = self._index(entities, entity_id)
        if index is None:
            raise EntityNotFoundError(collection, entity_id)
        removed = entities.pop(index)
        self._touch()
        return removed

    def rekey(self, collection: str, old_id: str, entity: Any) -> None:
        """Replace the entity stored under ``old_id`` with ``entity`` (new id), same slot."""
        entities = self._list(collection)
        index = self._index(entities, old_id)
        if index is None:
            raise EntityNotFoundError(collection, old_id)
        entities[index] = entity
        self._touch()

    def replace_collection(self, collection: str, entities: Iterable[Any]) -> None:
        self._collections[self._name(collection)] = list(entities)
        self._touch()

    # -- snapshot / restore --------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            collections=MappingProxyType(
                {name: tuple(entities) for name, entities in self._collections.items()}
            ),
            version=self._version,
        )

    def restore(self, snapshot: StoreSnapshot) -> None:
        self._collections = {name: list(entities) for name, entities in snapshot.collections.items()}
        self._touch()
        logger.debug("store_restored", extra={"snapshot_version": snapshot.version})

    def snapshot_slice(self, collection: str, entity_id: str) -> SliceSnapshot:
        return SliceSnapshot(
            collection=collection,
            entity_id=entity_id,
            entities=self.items(collection),
        )

    def restore_slice(self, snapshot: SliceSnapshot) -> None:
        """
        Put the snapshot's entity back exactly as it was.

        The target's slot is rebuilt from the snapshot: removed if it did
        not exist, otherwise reinserted next to the neighbour it had in the
        snapshot. Other entities keep their current values, so a rollback
        never undoes a concurrent mutation on a different entity. With no
        concurrent change the list is equal to the snapshot.
        """
        before = snapshot.entities
        current = [e for e in self._list(snapshot.collection) if e.id != snapshot.entity_id]
        target = snapshot.before

        if target is not None:
            position = next(i for i, e in enumerate(before) if e.id == snapshot.entity_id)
            current.insert(self._anchor(before, position, current), target)

        self._collections[snapshot.collection] = current
        self._touch()

    # -- internals -----------------------------------------------------------

    @staticmethod
    def _anchor(before: tuple[Any, ...], position: int, current: list[Any]) -> int:
        current_ids = [e.id for e in current]
        for prev in reversed(before[:position]):
            if prev.id in current_ids:
                return current_ids.index(prev.id) + 1
        for nxt in before[position + 1:]:
            if nxt.id in current_ids:
                return current_ids.index(nxt.id)
        return min(position, len(current))

    @staticmethod
    def _index(entities: list[Any], entity_id: str) -> int | None:
        for i, entity in enumerate(entities):
            if entity.id == entity_id:
                return i
        return None

    def _name(self, collection: str) -> str:
        if collection not in self._collections:
            raise KeyError(f"Unknown collection: {collection}")
        return collection

    def _list(self, collection: str) -> list[Any]:
        return self._collections[self._name(collection)]

    def _touch(self) -> None:
        self._version += 1
