"""
Realtime document store: abstract capability plus an aiosqlite adapter.

The sync core sits on top of a managed realtime document store. It needs
exactly these capabilities from it:
- single-document reads and writes, with server-assigned timestamps
- conditional create-if-absent (the uniqueness primitive for idempotency)
- filtered, ordered collection queries
- atomic multi-document batches and read-then-write transactions
- push listeners that re-deliver the full query result after every commit

SqliteDocumentStore implements them on a single SQLite file and is what
the CLI and the tests run against.

Invariants:
    - Document paths have an even number of non-empty segments
    - Every write set commits in one SQLite transaction or not at all
    - Reads, writes and listener evaluations are serialised by one lock,
      so no reader observes a partially applied write set
    - Listener deliveries for one registration are monotonic: each one
      reflects a state at least as new as the previous one
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar, cast

import aiosqlite
import structlog

from .errors import StoreError, TransactionAborted

log = structlog.get_logger()

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    path        TEXT PRIMARY KEY,
    collection  TEXT NOT NULL,
    data        TEXT NOT NULL,
    update_time TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_collection
    ON documents(collection);
"""

_DATETIME_TAG = "__datetime__"


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Replaced by the commit time when the write is applied.
SERVER_TIMESTAMP: Any = _Sentinel("SERVER_TIMESTAMP")
# Removes the field in update() and merge writes.
DELETE_FIELD: Any = _Sentinel("DELETE_FIELD")


# ---------------------------------------------------------------------------
# Paths, snapshots and queries
# ---------------------------------------------------------------------------


def split_path(path: str) -> list[str]:
    parts = path.strip("/").split("/")
    if any(not p for p in parts):
        raise ValueError(f"Invalid path: {path!r}")
    return parts


def collection_of(path: str) -> str:
    """Collection path of a document path (``teams/t1/players/p1`` -> ``teams/t1/players``)."""
    parts = split_path(path)
    if len(parts) % 2:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(parts[:-1])


def check_collection(path: str) -> str:
    parts = split_path(path)
    if not len(parts) % 2:
        raise ValueError(f"Not a collection path: {path!r}")
    return "/".join(parts)


@dataclass(frozen=True)
class DocumentSnapshot:
    """One document as read from the store."""

    path: str
    data: dict[str, Any]
    update_time: datetime | None = None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def get(self, field_name: str, default: Any = None) -> Any:
        return self.data.get(field_name, default)


_OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "array-contains")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: dict[str, Any]) -> bool:
        # Documents without the field never match, whatever the operator.
        if self.field not in data:
            return False
        actual = data[self.field]
        try:
            if self.op == "==":
                return actual == self.value
            if self.op == "!=":
                return actual != self.value
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            if self.op == ">=":
                return actual >= self.value
            if self.op == "in":
                return actual in self.value
            return isinstance(actual, list) and self.value in actual
        except TypeError:
            return False


@dataclass(frozen=True)
class Query:
    """A collection query, or a watch on a single document.

    Built fluently::

        Query("notifications").where("userId", "==", uid).order("createdAt", descending=True)
    """

    collection: str | None = None
    filters: tuple[Filter, ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    document_path: str | None = None

    def __post_init__(self) -> None:
        if self.document_path is not None:
            collection_of(self.document_path)
        elif self.collection is not None:
            check_collection(self.collection)
        else:
            raise ValueError("Query needs a collection or a document path")

    @classmethod
    def document(cls, path: str) -> Query:
        return cls(document_path="/".join(split_path(path)))

    def where(self, field_name: str, op: str, value: Any) -> Query:
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def order(self, field_name: str, descending: bool = False) -> Query:
        return replace(self, order_by=field_name, descending=descending)

    def take(self, limit: int) -> Query:
        return replace(self, limit=limit)

    @property
    def watched_collection(self) -> str:
        if self.document_path is not None:
            return collection_of(self.document_path)
        # __post_init__ guarantees one of the two is set.
        return cast(str, self.collection)

    def apply(self, docs: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        """Filter, order and limit documents of the queried collection."""
        selected = [d for d in docs if all(f.matches(d.data) for f in self.filters)]
        if self.order_by is not None:
            key = self.order_by
            selected = [d for d in selected if key in d.data]
            selected.sort(key=lambda d: d.path)
            try:
                selected.sort(key=lambda d: d.data[key], reverse=self.descending)
            except TypeError as exc:
                raise StoreError(f"Cannot order by mixed-type field '{key}'") from exc
        else:
            selected.sort(key=lambda d: d.path)
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Write:
    kind: str  # set | merge | update | delete | create
    path: str
    data: dict[str, Any] = field(default_factory=dict)


class _WriteSet:
    """Collects writes for a batch or a transaction."""

    def __init__(self) -> None:
        self._writes: list[_Write] = []

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        collection_of(path)
        self._writes.append(_Write("merge" if merge else "set", path, dict(data)))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        collection_of(path)
        self._writes.append(_Write("update", path, dict(fields)))

    def delete(self, path: str) -> None:
        collection_of(path)
        self._writes.append(_Write("delete", path))

    def create(self, path: str, data: dict[str, Any]) -> None:
        collection_of(path)
        self._writes.append(_Write("create", path, dict(data)))

    @property
    def writes(self) -> list[_Write]:
        return list(self._writes)


class WriteBatch(_WriteSet):
    """Blind writes committed atomically."""

    def __init__(self, store: DocumentStore) -> None:
        super().__init__()
        self._store = store

    async def commit(self) -> None:
        await self._store.commit(self.writes)


class Transaction(_WriteSet):
    """Read-then-write unit; reads see committed state, writes are buffered."""

    def __init__(self, store: SqliteDocumentStore) -> None:
        super().__init__()
        self._store = store

    async def get(self, path: str) -> DocumentSnapshot | None:
        return await self._store._read(path)

    async def query(self, query: Query) -> list[DocumentSnapshot]:
        return await self._store._query(query)


# ---------------------------------------------------------------------------
# Listeners
# ---------------------------------------------------------------------------

SnapshotCallback = Callable[[list[DocumentSnapshot]], None]
ErrorCallback = Callable[[BaseException], None]


class ListenerRegistration:
    """Handle of a push listener; ``remove()`` may be called any number of times."""

    def __init__(
        self,
        store: DocumentStore,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True
        self._store = store

    def remove(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._unregister(self)

    def fail(self, exc: BaseException) -> None:
        """Deliver the terminal error once and stop the listener."""
        if not self.active:
            return
        self.remove()
        if self.on_error is not None:
            self.on_error(exc)


# ---------------------------------------------------------------------------
# Store capability
# ---------------------------------------------------------------------------


class DocumentStore(ABC):
    """Capabilities the sync core consumes from the realtime store."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot | None: ...

    @abstractmethod
    async def query(self, query: Query) -> list[DocumentSnapshot]: ...

    @abstractmethod
    async def commit(self, writes: list[_Write]) -> None: ...

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T: ...

    @abstractmethod
    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> ListenerRegistration: ...

    @abstractmethod
    def _unregister(self, registration: ListenerRegistration) -> None: ...

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        batch = self.batch()
        batch.set(path, data, merge=merge)
        await batch.commit()

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        batch = self.batch()
        batch.update(path, fields)
        await batch.commit()

    async def delete(self, path: str) -> None:
        batch = self.batch()
        batch.delete(path)
        await batch.commit()

    async def create(self, path: str, data: dict[str, Any]) -> bool:
        """Create the document unless it exists. Returns False if it already did."""
        batch = self.batch()
        batch.create(path, data)
        try:
            await batch.commit()
        except DocumentExists:
            return False
        return True

    def batch(self) -> WriteBatch:
        return WriteBatch(self)


class DocumentExists(TransactionAborted):
    """A create() write targeted an existing document."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Document already exists: {path}", path=path)
        self.code = "ALREADY_EXISTS"


# ---------------------------------------------------------------------------
# JSON encoding
# ---------------------------------------------------------------------------


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[_DATETIME_TAG])
    return obj


def encode_document(data: dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_default, sort_keys=True)


def decode_document(raw: str) -> dict[str, Any]:
    return json.loads(raw, object_hook=_decode_hook)


def _resolve(data: dict[str, Any], now: datetime) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        if value is DELETE_FIELD:
            continue
        if value is SERVER_TIMESTAMP:
            out[key] = now
        elif isinstance(value, dict):
            out[key] = _resolve(value, now)
        else:
            out[key] = value
    return out


# ---------------------------------------------------------------------------
# SQLite adapter
# ---------------------------------------------------------------------------


class SqliteDocumentStore(DocumentStore):
    """Async SQLite document store with in-process push listeners."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[ListenerRegistration] = []
        self._tasks: set[asyncio.Task] = set()

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        for registration in list(self._listeners):
            registration.remove()
        for task in list(self._tasks):
            task.cancel()
        if self._db:
            await self._db.close()
            self._db = None

    async def ping(self) -> bool:
        if not self._db:
            return False
        try:
            async with self._lock:
                await self._db.execute("SELECT 1")
            return True
        except aiosqlite.Error:
            return False

    # --- Reads ---

    async def get(self, path: str) -> DocumentSnapshot | None:
        async with self._lock:
            return await self._read(path)

    async def query(self, query: Query) -> list[DocumentSnapshot]:
        async with self._lock:
            return await self._query(query)

    async def _read(self, path: str) -> DocumentSnapshot | None:
        collection_of(path)
        if not self._db:
            raise StoreError("Store is not open", path=path)
        try:
            cursor = await self._db.execute(
                "SELECT path, data, update_time FROM documents WHERE path = ?",
                (path,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"Read failed: {exc}", path=path) from exc
        return self._snapshot(row) if row else None

    async def _query(self, query: Query) -> list[DocumentSnapshot]:
        if query.document_path is not None:
            doc = await self._read(query.document_path)
            return [doc] if doc else []
        if not self._db:
            raise StoreError("Store is not open", path=query.collection)
        try:
            cursor = await self._db.execute(
                "SELECT path, data, update_time FROM documents WHERE collection = ?",
                (query.collection,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(f"Query failed: {exc}", path=query.collection) from exc
        return query.apply(self._snapshot(r) for r in rows)

    @staticmethod
    def _snapshot(row: aiosqlite.Row) -> DocumentSnapshot:
        return DocumentSnapshot(
            path=row["path"],
            data=decode_document(row["data"]),
            update_time=datetime.fromisoformat(row["update_time"]),
        )

    # --- Writes ---

    async def commit(self, writes: list[_Write]) -> None:
        async with self._lock:
            touched = await self._apply(writes)
        await self._notify(touched)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` with the store locked and commit its writes atomically.

        Exceptions raised by ``fn`` propagate unchanged and nothing is
        written. ``fn`` must use the transaction it is given, never the
        store itself.
        """
        async with self._lock:
            txn = Transaction(self)
            result = await fn(txn)
            touched = await self._apply(txn.writes)
        await self._notify(touched)
        return result

    async def _apply(self, writes: list[_Write]) -> set[str]:
        if not writes:
            return set()
        if not self._db:
            raise TransactionAborted("Store is not open")

        now = datetime.now(timezone.utc)
        pending: dict[str, dict[str, Any] | None] = {}

        async def current(path: str) -> dict[str, Any] | None:
            if path in pending:
                return pending[path]
            doc = await self._read(path)
            return dict(doc.data) if doc else None

        for write in writes:
            existing = await current(write.path)
            if write.kind == "set":
                pending[write.path] = _resolve(write.data, now)
            elif write.kind == "create":
                if existing is not None:
                    raise DocumentExists(write.path)
                pending[write.path] = _resolve(write.data, now)
            elif write.kind in ("merge", "update"):
                if existing is None and write.kind == "update":
                    raise TransactionAborted(
                        f"No document to update: {write.path}", path=write.path
                    )
                merged = dict(existing or {})
                for key, value in write.data.items():
                    if value is DELETE_FIELD:
                        merged.pop(key, None)
                merged.update(_resolve(write.data, now))
                pending[write.path] = merged
            else:
                pending[write.path] = None

        stamp = now.isoformat()
        try:
            for path, data in pending.items():
                if data is None:
                    await self._db.execute("DELETE FROM documents WHERE path = ?", (path,))
                else:
                    await self._db.execute(
                        """INSERT OR REPLACE INTO documents (path, collection, data, update_time)
                           VALUES (?, ?, ?, ?)""",
                        (path, collection_of(path), encode_document(data), stamp),
                    )
            await self._db.commit()
        except (aiosqlite.Error, TypeError) as exc:
            await self._db.rollback()
            raise TransactionAborted(f"Commit failed: {exc}") from exc

        return {collection_of(p) for p in pending}

    # --- Listeners ---

    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> ListenerRegistration:
        registration = ListenerRegistration(self, query, on_snapshot, on_error)
        self._listeners.append(registration)
        task = asyncio.get_running_loop().create_task(self._evaluate(registration))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return registration

    def _unregister(self, registration: ListenerRegistration) -> None:
        try:
            self._listeners.remove(registration)
        except ValueError:
            pass

    async def _notify(self, collections: set[str]) -> None:
        for registration in list(self._listeners):
            if registration.query.watched_collection in collections:
                await self._evaluate(registration)

    async def _evaluate(self, registration: ListenerRegistration) -> None:
        async with self._lock:
            if not registration.active:
                return
            try:
                docs = await self._query(registration.query)
            except Exception as exc:
                log.warning(
                    "store.listener_failed",
                    collection=registration.query.watched_collection,
                    error=str(exc),
                )
                registration.fail(exc)
                return
            registration.on_snapshot(docs)
