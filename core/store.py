"""Reqbench Plugin Bridge — Entity Store Gateway

The store exclusively owns persisted entity state. ``EntityStore`` is the
interface the host dispatcher relies on; ``MemoryEntityStore`` is the
in-process reference implementation used by the server and the tests.

Store guarantees relied on by the rest of the bridge:
- transactions are serializable; an exception inside one rolls it back
- ids are assigned by the store and never change
- ``updated_at`` is strictly increasing across the store
- deleting a Workspace or Folder cascades to everything it contains
- committed changes are published to every open ChangeStream
"""

from __future__ import annotations
import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from core.errors import ConflictError, ValidationError, not_found
from core.folder_tree import FolderTree
from models.entities import ChangeEvent, ChangeOp, Entity, ModelKind

logger = logging.getLogger("reqbench.store")


class ChangeStream:
    """Queue of committed ChangeEvents. ``get`` returns None once closed."""

    def __init__(self, on_close: Optional[Callable[["ChangeStream"], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def publish(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> Optional[ChangeEvent]:
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class StoreTransaction(ABC):
    @abstractmethod
    async def get(self, model: ModelKind, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    async def list(self, model: ModelKind, **filters: Any) -> List[Entity]:
        """Entities of ``model`` whose attributes equal every filter value."""

    @abstractmethod
    async def insert(self, entity: Entity) -> Entity:
        """Persist a new entity; id and timestamps are assigned here."""

    @abstractmethod
    async def update(
        self,
        model: ModelKind,
        entity_id: str,
        changes: Dict[str, Any],
        if_updated_at: Optional[str] = None,
    ) -> Entity:
        pass

    @abstractmethod
    async def delete(self, model: ModelKind, entity_id: str) -> List[Entity]:
        """Delete an entity and everything it contains. Returns every
        removed entity, the requested one first."""


class EntityStore(ABC):
    @abstractmethod
    def transaction(self):
        """Async context manager yielding a StoreTransaction."""

    @abstractmethod
    def watch(self) -> ChangeStream:
        pass


class MemoryEntityStore(EntityStore):
    def __init__(self):
        self._tables: Dict[ModelKind, Dict[str, Entity]] = {kind: {} for kind in ModelKind}
        self._lock = asyncio.Lock()
        self._watchers: Set[ChangeStream] = set()
        self._last_stamp: Optional[datetime] = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["_MemoryTransaction"]:
        async with self._lock:
            tx = _MemoryTransaction(self)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise
            for event in tx.changes:
                for watcher in list(self._watchers):
                    watcher.publish(event)

    def watch(self) -> ChangeStream:
        stream = ChangeStream(on_close=self._watchers.discard)
        self._watchers.add(stream)
        return stream

    def count(self, model: ModelKind) -> int:
        return len(self._tables[model])

    def _now(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    @staticmethod
    def _new_id(model: ModelKind) -> str:
        return f"{model.id_prefix}_{uuid.uuid4().hex[:12]}"


class _MemoryTransaction(StoreTransaction):
    def __init__(self, store: MemoryEntityStore):
        self._store = store
        self._undo: List[tuple] = []
        self.changes: List[ChangeEvent] = []

    def _table(self, model: ModelKind) -> Dict[str, Entity]:
        return self._store._tables[model]

    def _remember(self, model: ModelKind, entity_id: str) -> None:
        self._undo.append((model, entity_id, self._table(model).get(entity_id)))

    def rollback(self) -> None:
        for model, entity_id, previous in reversed(self._undo):
            if previous is None:
                self._table(model).pop(entity_id, None)
            else:
                self._table(model)[entity_id] = previous
        self._undo.clear()
        self.changes.clear()

    async def get(self, model: ModelKind, entity_id: str) -> Optional[Entity]:
        entity = self._table(model).get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def list(self, model: ModelKind, **filters: Any) -> List[Entity]:
        result = []
        for entity in self._table(model).values():
            if all(getattr(entity, key, None) == value for key, value in filters.items()):
                result.append(copy.deepcopy(entity))
        return result

    async def insert(self, entity: Entity) -> Entity:
        stored = copy.deepcopy(entity)
        stored.id = self._store._new_id(entity.MODEL)
        stored.created_at = stored.updated_at = self._store._now()
        self._remember(entity.MODEL, stored.id)
        self._table(entity.MODEL)[stored.id] = stored
        self.changes.append(ChangeEvent.for_entity(stored, ChangeOp.CREATED))
        return copy.deepcopy(stored)

    async def update(
        self,
        model: ModelKind,
        entity_id: str,
        changes: Dict[str, Any],
        if_updated_at: Optional[str] = None,
    ) -> Entity:
        current = self._table(model).get(entity_id)
        if current is None:
            raise not_found(model.label, entity_id)

        known = {f.name for f in fields(current)}
        for key in changes:
            if key not in known:
                raise ValidationError(f"{model.label} has no attribute {key!r}")
            if key in current.IMMUTABLE_FIELDS or key == "updated_at":
                raise ValidationError(f"{model.label}.{key} cannot be changed")

        if if_updated_at is not None and if_updated_at != current.updated_at:
            raise ConflictError(
                f"{model.label} {entity_id!r} was modified at {current.updated_at}, "
                f"expected {if_updated_at}"
            )

        updated = copy.deepcopy(current)
        for key, value in changes.items():
            setattr(updated, key, copy.deepcopy(value))
        updated.updated_at = self._store._now()

        self._remember(model, entity_id)
        self._table(model)[entity_id] = updated
        self.changes.append(ChangeEvent.for_entity(updated, ChangeOp.UPDATED))
        return copy.deepcopy(updated)

    async def delete(self, model: ModelKind, entity_id: str) -> List[Entity]:
        target = self._table(model).get(entity_id)
        if target is None:
            raise not_found(model.label, entity_id)

        doomed: List[tuple] = [(model, entity_id)]
        if model is ModelKind.WORKSPACE:
            for kind in ModelKind:
                if kind is ModelKind.WORKSPACE:
                    continue
                doomed.extend(
                    (kind, e.id) for e in self._table(kind).values()
                    if e.workspace_id == entity_id
                )
        elif model is ModelKind.FOLDER:
            tree = FolderTree(
                f for f in self._table(ModelKind.FOLDER).values()
                if f.workspace_id == target.workspace_id
            )
            folder_ids = {entity_id, *tree.descendants(entity_id)}
            doomed.extend((ModelKind.FOLDER, fid) for fid in folder_ids if fid != entity_id)
            for kind in (ModelKind.HTTP_REQUEST, ModelKind.GRPC_REQUEST):
                doomed.extend(
                    (kind, e.id) for e in self._table(kind).values()
                    if e.folder_id in folder_ids
                )
            doomed.extend(self._responses_of(
                {eid for kind, eid in doomed if kind is ModelKind.HTTP_REQUEST}
            ))
        elif model is ModelKind.HTTP_REQUEST:
            doomed.extend(self._responses_of({entity_id}))

        removed: List[Entity] = []
        for kind, eid in doomed:
            if eid not in self._table(kind):
                continue
            self._remember(kind, eid)
            entity = self._table(kind).pop(eid)
            removed.append(entity)
            self.changes.append(ChangeEvent.for_entity(entity, ChangeOp.DELETED))

        if len(removed) > 1:
            logger.debug("Deleted %s %s with %d contained entities",
                         model.label, entity_id, len(removed) - 1)
        return [copy.deepcopy(e) for e in removed]

    def _responses_of(self, request_ids: Set[str]) -> List[tuple]:
        return [
            (ModelKind.HTTP_RESPONSE, r.id)
            for r in self._table(ModelKind.HTTP_RESPONSE).values()
            if r.request_id in request_ids
        ]
