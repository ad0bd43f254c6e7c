"""In-memory document store implementation."""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

import structlog

from ..domain.models import utcnow
from .base import (
    AlreadyExists,
    Document,
    DocumentStore,
    ErrorCallback,
    FailedPrecondition,
    FieldFilter,
    Increment,
    NotFound,
    OrderBy,
    ServerTimestamp,
    SnapshotCallback,
    Subscription,
    get_field,
)

logger = structlog.get_logger()


def _resolve(value: Any, now: datetime) -> Any:
    if isinstance(value, ServerTimestamp):
        return now
    if isinstance(value, Increment):
        return value.amount
    if isinstance(value, dict):
        return {key: _resolve(item, now) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve(item, now) for item in value]
    return copy.deepcopy(value)


def _apply_changes(data: Dict[str, Any], changes: Dict[str, Any], now: datetime) -> None:
    for path, value in changes.items():
        parts = path.split(".")
        target = data
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        leaf = parts[-1]
        if isinstance(value, Increment):
            current = target.get(leaf)
            if not isinstance(current, (int, float)):
                current = 0
            target[leaf] = current + value.amount
        else:
            target[leaf] = _resolve(value, now)


def _sort_key(value: Any) -> Tuple[bool, Any]:
    return (value is None, value)


def _copy(document: Document) -> Document:
    return replace(document, data=copy.deepcopy(document.data))


class _Watch(Subscription):
    """Live query registered on one collection."""

    def __init__(
        self,
        store: "InMemoryDocumentStore",
        collection: str,
        where: Sequence[FieldFilter],
        order_by: Sequence[OrderBy],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self.collection = collection
        self.where = tuple(where)
        self.order_by = tuple(order_by)
        self._store = store
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._remove_watch(self)
        logger.debug("watch_removed", collection=self.collection)

    def _deliver(self, documents: List[Document]) -> None:
        if not self._active:
            return
        try:
            self._on_snapshot(documents)
        except Exception as e:
            logger.error("snapshot_listener_error", collection=self.collection, error=str(e))

    def _fail(self, error: Exception) -> None:
        if not self._active:
            return
        self.unsubscribe()
        logger.error("watch_failed", collection=self.collection, error=str(error))
        if self._on_error is not None:
            self._on_error(error)


class InMemoryDocumentStore(DocumentStore):
    """Async document store kept in process memory.

    ``latency`` simulates a network round trip: every operation awaits it
    before touching data, so concurrent callers interleave the way they
    would against a hosted database.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._watches: Dict[str, List[_Watch]] = {}
        self._lock = asyncio.Lock()
        self._latency = latency
        self._sequence = 0
        self._last_time: Optional[datetime] = None
        logger.info("document_store_initialized", latency=latency)

    @staticmethod
    def _split(path: str) -> Tuple[str, str]:
        parts = path.strip("/").split("/")
        if len(parts) < 2 or len(parts) % 2 or not all(parts):
            raise ValueError(f"Not a document path: {path!r}")
        return "/".join(parts[:-1]), parts[-1]

    @staticmethod
    def _check_collection(collection: str) -> str:
        parts = collection.strip("/").split("/")
        if len(parts) % 2 == 0 or not all(parts):
            raise ValueError(f"Not a collection path: {collection!r}")
        return "/".join(parts)

    async def _round_trip(self) -> None:
        await asyncio.sleep(self._latency)

    def _now(self) -> datetime:
        # Strictly increasing so server timestamps never collide
        now = utcnow()
        if self._last_time is not None and now <= self._last_time:
            now = self._last_time + timedelta(microseconds=1)
        self._last_time = now
        return now

    def _insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        now = self._now()
        self._sequence += 1
        document = Document(
            id=doc_id,
            path=f"{collection}/{doc_id}",
            data=_resolve(data, now),
            create_time=now,
            update_time=now,
            sequence=self._sequence,
        )
        self._collections.setdefault(collection, {})[doc_id] = document
        return document

    def _select(
        self,
        collection: str,
        where: Sequence[FieldFilter],
        order_by: Sequence[OrderBy],
    ) -> List[Document]:
        documents = sorted(self._collections.get(collection, {}).values(), key=lambda d: d.sequence)
        documents = [d for d in documents if all(f.matches(d.data) for f in where)]
        # Stable sorts, least significant key first; insertion order breaks ties
        for order in reversed(order_by):
            documents.sort(
                key=lambda d: _sort_key(get_field(d.data, order.field)),
                reverse=order.descending,
            )
        return [_copy(d) for d in documents]

    def _pending_snapshots(self, collection: str) -> List[Tuple[_Watch, Union[List[Document], Exception]]]:
        pending: List[Tuple[_Watch, Union[List[Document], Exception]]] = []
        for watch in list(self._watches.get(collection, [])):
            try:
                pending.append((watch, self._select(collection, watch.where, watch.order_by)))
            except Exception as e:
                pending.append((watch, e))
        return pending

    @staticmethod
    def _publish(pending: List[Tuple[_Watch, Union[List[Document], Exception]]]) -> None:
        for watch, result in pending:
            if isinstance(result, Exception):
                watch._fail(result)
            else:
                watch._deliver(result)

    def _remove_watch(self, watch: _Watch) -> None:
        watches = self._watches.get(watch.collection, [])
        if watch in watches:
            watches.remove(watch)
        if not watches:
            self._watches.pop(watch.collection, None)

    async def get(self, path: str) -> Optional[Document]:
        """Retrieve a document by path."""
        await self._round_trip()
        collection, doc_id = self._split(path)
        async with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return _copy(document) if document is not None else None

    async def create(self, path: str, data: Dict[str, Any]) -> Document:
        """Create a document; only the first of several racing creators wins."""
        await self._round_trip()
        collection, doc_id = self._split(path)
        async with self._lock:
            if doc_id in self._collections.get(collection, {}):
                logger.info("document_already_exists", path=path)
                raise AlreadyExists(path)
            document = self._insert(collection, doc_id, data)
            pending = self._pending_snapshots(collection)
        self._publish(pending)
        return _copy(document)

    async def set(self, path: str, data: Dict[str, Any]) -> Document:
        """Create or overwrite a document."""
        await self._round_trip()
        collection, doc_id = self._split(path)
        async with self._lock:
            existing = self._collections.get(collection, {}).get(doc_id)
            if existing is None:
                document = self._insert(collection, doc_id, data)
            else:
                now = self._now()
                existing.data = _resolve(data, now)
                existing.update_time = now
                document = existing
            pending = self._pending_snapshots(collection)
        self._publish(pending)
        return _copy(document)

    async def update(
        self, path: str, changes: Dict[str, Any], last_update_time: Optional[datetime] = None
    ) -> Document:
        """Apply field changes to an existing document."""
        await self._round_trip()
        collection, doc_id = self._split(path)
        async with self._lock:
            existing = self._collections.get(collection, {}).get(doc_id)
            if existing is None:
                logger.warning("document_not_found", path=path)
                raise NotFound(path)
            if last_update_time is not None and existing.update_time != last_update_time:
                logger.info("document_update_conflict", path=path)
                raise FailedPrecondition(path)
            now = self._now()
            data = copy.deepcopy(existing.data)
            _apply_changes(data, changes, now)
            existing.data = data
            existing.update_time = now
            pending = self._pending_snapshots(collection)
        self._publish(pending)
        return _copy(existing)

    async def add(self, collection: str, data: Dict[str, Any]) -> Document:
        """Create a document with a generated id."""
        await self._round_trip()
        collection = self._check_collection(collection)
        async with self._lock:
            document = self._insert(collection, uuid4().hex, data)
            pending = self._pending_snapshots(collection)
        self._publish(pending)
        return _copy(document)

    async def delete(self, path: str) -> None:
        """Delete a document if it exists."""
        await self._round_trip()
        collection, doc_id = self._split(path)
        async with self._lock:
            documents = self._collections.get(collection, {})
            if documents.pop(doc_id, None) is None:
                return
            if not documents:
                self._collections.pop(collection, None)
            pending = self._pending_snapshots(collection)
        self._publish(pending)

    async def query(
        self,
        collection: str,
        where: Sequence[FieldFilter] = (),
        order_by: Sequence[OrderBy] = (),
    ) -> List[Document]:
        """Return matching documents of one collection."""
        await self._round_trip()
        collection = self._check_collection(collection)
        async with self._lock:
            return self._select(collection, where, order_by)

    async def list_collections(self, prefix: str = "") -> List[str]:
        """Return paths of non-empty collections starting with ``prefix``."""
        await self._round_trip()
        async with self._lock:
            return sorted(
                name for name, documents in self._collections.items()
                if documents and name.startswith(prefix)
            )

    async def watch(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        where: Sequence[FieldFilter] = (),
        order_by: Sequence[OrderBy] = (),
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Register a live query and deliver its current result."""
        await self._round_trip()
        collection = self._check_collection(collection)
        watch = _Watch(self, collection, where, order_by, on_snapshot, on_error)
        async with self._lock:
            initial = self._select(collection, watch.where, watch.order_by)
            self._watches.setdefault(collection, []).append(watch)
        logger.debug("watch_registered", collection=collection)
        watch._deliver(initial)
        return watch
