"""
Amora — In-process document store

A single-process implementation of ``DocumentStore`` with the semantics the
engine relies on from Firestore:

* every call is a suspension point (``await asyncio.sleep(latency)``), so
  concurrent coroutines genuinely interleave;
* transactions are optimistic: each read records the document version, the
  commit re-checks those versions and re-runs the body on conflict;
* server timestamps resolve to a strictly increasing commit clock;
* document and query listeners receive an initial snapshot followed by one
  snapshot per commit that changes their result, with added / modified /
  removed change sets.

Used by the test-suite and by ``STORE_BACKEND=memory`` for local development.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from app.store.base import (
    SERVER_TIMESTAMP,
    DocumentChange,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    ReadAfterWriteError,
    Subscription,
    Transaction,
    TransactionConflictError,
    get_field,
    parent_path,
)

logger = structlog.get_logger("amora.store.memory")

T = TypeVar("T")


@dataclass
class _Record:
    data: dict
    create_time: datetime
    update_time: datetime


@dataclass
class _Write:
    kind: str  # "set" | "merge" | "update" | "delete"
    path: str
    data: dict | None = None


@dataclass(eq=False)
class _QueryListener:
    query: Query
    subscription: Subscription
    last: dict[str, DocumentSnapshot] = field(default_factory=dict)


# ──────────────────────────────────────────────────────────────────────────────
# Data helpers
# ──────────────────────────────────────────────────────────────────────────────

def _resolve_timestamps(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_timestamps(v, now) for v in value]
    return copy.deepcopy(value)


def _deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_update(base: dict, patch: dict) -> dict:
    """Firestore ``update`` semantics: dotted keys address nested fields."""
    updated = copy.deepcopy(base)
    for key, value in patch.items():
        parts = key.split(".")
        target = updated
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value
    return updated


def _matches(query: Query, path: str, data: dict) -> bool:
    if parent_path(path) != query.collection:
        return False
    for flt in query.filters:
        value = get_field(data, flt.field)
        if flt.op == "==":
            if value != flt.value:
                return False
        elif flt.op == "array_contains":
            if not isinstance(value, list) or flt.value not in value:
                return False
    if query.order_by is not None and get_field(data, query.order_by) is None:
        # documents lacking the order field are not part of an ordered result
        return False
    return True


# ──────────────────────────────────────────────────────────────────────────────
# Transaction
# ──────────────────────────────────────────────────────────────────────────────

class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self.reads: dict[str, int] = {}
        self.writes: list[_Write] = []

    async def get(self, path: str) -> DocumentSnapshot:
        if self.writes:
            raise ReadAfterWriteError("Transactional reads must precede all writes")
        await self._store._tick()
        self.reads.setdefault(path, self._store._version(path))
        return self._store._snapshot(path)

    def set(self, path: str, data: dict, *, merge: bool = False) -> None:
        self.writes.append(_Write("merge" if merge else "set", path, data))

    def update(self, path: str, data: dict) -> None:
        self.writes.append(_Write("update", path, data))

    def delete(self, path: str) -> None:
        self.writes.append(_Write("delete", path))


# ──────────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────────

class MemoryStore(DocumentStore):
    """In-process ``DocumentStore``.

    Parameters
    ----------
    latency:
        Seconds every operation sleeps before touching state.  The default of
        ``0`` still yields to the event loop.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._latency = latency
        self._records: dict[str, _Record] = {}
        self._versions: dict[str, int] = {}
        self._version_counter = 0
        self._last_commit_time: datetime | None = None
        self._doc_listeners: dict[str, list[Subscription]] = {}
        self._query_listeners: list[_QueryListener] = []
        self.commit_count = 0

    # ── Internals ─────────────────────────────────────────────────────────

    async def _tick(self) -> None:
        await asyncio.sleep(self._latency)

    def _version(self, path: str) -> int:
        return self._versions.get(path, 0)

    def _commit_time(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_commit_time is not None and now <= self._last_commit_time:
            now = self._last_commit_time + timedelta(microseconds=1)
        self._last_commit_time = now
        return now

    def _snapshot(self, path: str) -> DocumentSnapshot:
        record = self._records.get(path)
        if record is None:
            return DocumentSnapshot(path=path, data=None)
        return DocumentSnapshot(
            path=path,
            data=copy.deepcopy(record.data),
            create_time=record.create_time,
            update_time=record.update_time,
        )

    def _run_query(self, query: Query) -> list[DocumentSnapshot]:
        paths = [
            path for path, record in self._records.items()
            if _matches(query, path, record.data)
        ]
        if query.order_by is not None:
            # stable tie-break on path so equal keys order deterministically
            paths.sort()
            paths.sort(
                key=lambda p: get_field(self._records[p].data, query.order_by),
                reverse=query.descending,
            )
        else:
            paths.sort()
        if query.limit is not None:
            paths = paths[: query.limit]
        return [self._snapshot(p) for p in paths]

    def _commit(self, writes: list[_Write]) -> None:
        """Apply a batch atomically.  Synchronous, so nothing interleaves."""
        if not writes:
            return
        now = self._commit_time()

        staged: dict[str, _Record | None] = {}

        def current(path: str) -> _Record | None:
            if path in staged:
                return staged[path]
            return self._records.get(path)

        for write in writes:
            existing = current(write.path)
            if write.kind == "delete":
                staged[write.path] = None
                continue
            data = _resolve_timestamps(write.data or {}, now)
            if write.kind == "update":
                if existing is None:
                    raise DocumentNotFoundError(write.path)
                new_data = _apply_update(existing.data, data)
            elif write.kind == "merge" and existing is not None:
                new_data = _deep_merge(existing.data, data)
            else:
                new_data = data
            staged[write.path] = _Record(
                data=new_data,
                create_time=existing.create_time if existing else now,
                update_time=now,
            )

        for path, record in staged.items():
            if record is None:
                self._records.pop(path, None)
            else:
                self._records[path] = record
            self._version_counter += 1
            self._versions[path] = self._version_counter

        self.commit_count += 1
        self._notify(set(staged))

    def _notify(self, changed_paths: set[str]) -> None:
        for path in changed_paths:
            for sub in list(self._doc_listeners.get(path, ())):
                sub.push(self._snapshot(path))

        changed_parents = {parent_path(p) for p in changed_paths}
        for listener in list(self._query_listeners):
            if listener.query.collection not in changed_parents:
                continue
            documents = self._run_query(listener.query)
            current = {d.path: d for d in documents}
            changes: list[DocumentChange] = []
            for doc in documents:
                previous = listener.last.get(doc.path)
                if previous is None:
                    changes.append(DocumentChange("added", doc))
                elif previous.update_time != doc.update_time:
                    changes.append(DocumentChange("modified", doc))
            for path, doc in listener.last.items():
                if path not in current:
                    changes.append(DocumentChange("removed", doc))
            listener.last = current
            if changes:
                listener.subscription.push(QuerySnapshot(documents, changes))

    # ── DocumentStore API ─────────────────────────────────────────────────

    async def get(self, path: str) -> DocumentSnapshot:
        await self._tick()
        return self._snapshot(path)

    async def set(self, path: str, data: dict, *, merge: bool = False) -> None:
        await self._tick()
        self._commit([_Write("merge" if merge else "set", path, data)])

    async def update(self, path: str, data: dict) -> None:
        await self._tick()
        self._commit([_Write("update", path, data)])

    async def add(self, collection: str, data: dict) -> str:
        await self._tick()
        doc_id = uuid.uuid4().hex[:20]
        self._commit([_Write("set", f"{collection}/{doc_id}", data)])
        return doc_id

    async def delete(self, path: str) -> None:
        await self._tick()
        self._commit([_Write("delete", path)])

    async def query(self, query: Query) -> list[DocumentSnapshot]:
        await self._tick()
        return self._run_query(query)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        for attempt in range(1, max_attempts + 1):
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            await self._tick()
            stale = [
                path for path, version in tx.reads.items()
                if self._version(path) != version
            ]
            if not stale:
                self._commit(tx.writes)
                return result
            logger.debug("transaction_conflict", attempt=attempt, stale_paths=stale)
        raise TransactionConflictError(max_attempts)

    def subscribe_document(self, path: str) -> Subscription[DocumentSnapshot]:
        listeners = self._doc_listeners.setdefault(path, [])
        sub: Subscription[DocumentSnapshot] = Subscription()

        def _remove() -> None:
            if sub in listeners:
                listeners.remove(sub)

        sub.set_on_cancel(_remove)
        listeners.append(sub)
        sub.push(self._snapshot(path))
        return sub

    def subscribe_query(self, query: Query) -> Subscription[QuerySnapshot]:
        sub: Subscription[QuerySnapshot] = Subscription()
        documents = self._run_query(query)
        listener = _QueryListener(query, sub, {d.path: d for d in documents})

        def _remove() -> None:
            if listener in self._query_listeners:
                self._query_listeners.remove(listener)

        sub.set_on_cancel(_remove)
        self._query_listeners.append(listener)
        sub.push(QuerySnapshot(documents, [DocumentChange("added", d) for d in documents]))
        return sub

    # ── Introspection (tests, health) ─────────────────────────────────────

    @property
    def listener_count(self) -> int:
        return sum(len(v) for v in self._doc_listeners.values()) + len(self._query_listeners)

    def paths(self, prefix: str = "") -> list[str]:
        return sorted(p for p in self._records if p.startswith(prefix))
