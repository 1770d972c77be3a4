"""
Amora — Document store interface

The engine talks to its document database exclusively through
``DocumentStore``.  Two backends implement it:

* ``app.store.firestore.FirestoreStore`` — Google Cloud Firestore (production).
* ``app.store.memory.MemoryStore`` — in-process store with optimistic
  transactions and live listeners (local development and tests).

Paths are slash-separated strings (``"users/u1/swipes/u2"``).  Documents are
plain dicts; ``SERVER_TIMESTAMP`` may appear anywhere in written data and is
replaced by the commit time by the backend.

Live listeners are exposed as ``Subscription`` objects: async iterators of
snapshots with an explicit ``unsubscribe()``.  A subscription that is never
unsubscribed keeps delivering updates forever.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger("amora.store")

T = TypeVar("T")
U = TypeVar("U")


# ──────────────────────────────────────────────────────────────────────────────
# Sentinels & errors
# ──────────────────────────────────────────────────────────────────────────────

class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    """Base class for errors raised by the store backends themselves."""


class DocumentNotFoundError(StoreError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Document not found: {path}")


class TransactionConflictError(StoreError):
    """Raised once the transaction body has been retried ``max_attempts`` times."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Transaction aborted after {attempts} conflicting attempts")


class ReadAfterWriteError(StoreError):
    """All transactional reads must happen before the first write."""


# ──────────────────────────────────────────────────────────────────────────────
# Path helpers
# ──────────────────────────────────────────────────────────────────────────────

def join_path(*segments: str) -> str:
    for segment in segments:
        if not segment or "/" in segment:
            raise ValueError(f"Invalid path segment: {segment!r}")
    return "/".join(segments)


def parent_path(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def document_id(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def get_field(data: dict | None, field_path: str, default: Any = None) -> Any:
    """Read a dotted field path (``"lastMessage.text"``) from a document."""
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


# ──────────────────────────────────────────────────────────────────────────────
# Snapshots & queries
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: dict | None
    create_time: datetime | None = None
    update_time: datetime | None = None

    @property
    def id(self) -> str:
        return document_id(self.path)

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_path: str, default: Any = None) -> Any:
        return get_field(self.data, field_path, default)

    def to_dict(self) -> dict:
        return dict(self.data or {})


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str  # "==" | "array_contains"
    value: Any


SUPPORTED_OPS = ("==", "array_contains")


@dataclass(frozen=True)
class Query:
    """Immutable description of a collection query.

    Built fluently::

        Query("chats").where("participants", "array_contains", uid)
                      .order("updatedAt", descending=True)
                      .take(50)
    """

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        if op not in SUPPORTED_OPS:
            raise ValueError(f"Unsupported filter operator: {op!r}")
        return dataclasses.replace(
            self, filters=self.filters + (FieldFilter(field_path, op, value),)
        )

    def order(self, field_path: str, descending: bool = False) -> "Query":
        return dataclasses.replace(self, order_by=field_path, descending=descending)

    def take(self, limit: int) -> "Query":
        if limit < 1:
            raise ValueError(f"Query limit must be positive, got {limit}")
        return dataclasses.replace(self, limit=limit)


@dataclass(frozen=True)
class DocumentChange:
    type: str  # "added" | "modified" | "removed"
    document: DocumentSnapshot


@dataclass(frozen=True)
class QuerySnapshot:
    documents: list[DocumentSnapshot] = field(default_factory=list)
    changes: list[DocumentChange] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.documents)

    def added(self) -> list[DocumentSnapshot]:
        return [c.document for c in self.changes if c.type == "added"]


# ──────────────────────────────────────────────────────────────────────────────
# Subscription
# ──────────────────────────────────────────────────────────────────────────────

_CLOSED = object()


class Subscription(Generic[T]):
    """A live, cancellable stream of snapshots.

    Iterate with ``async for`` (or ``await sub.next()``) and stop it with
    ``unsubscribe()``; it is also an async context manager that unsubscribes
    on exit.  Iteration ends once the subscription is cancelled.  An error
    pushed by the backend is raised from the iterator and closes the stream.
    """

    def __init__(
        self,
        on_cancel: Callable[[], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_cancel = on_cancel
        self._loop = loop
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def set_on_cancel(self, on_cancel: Callable[[], None]) -> None:
        self._on_cancel = on_cancel

    # ── Producer side ─────────────────────────────────────────────────────

    def push(self, item: T) -> None:
        if not self._closed:
            self._queue.put_nowait((item, None))

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._queue.put_nowait((None, exc))

    def push_threadsafe(self, item: T) -> None:
        """Deliver from a foreign thread (Firestore listener callbacks)."""
        if self._loop is None:
            raise RuntimeError("Subscription was created without an event loop")
        self._loop.call_soon_threadsafe(self.push, item)

    def fail_threadsafe(self, exc: BaseException) -> None:
        if self._loop is None:
            raise RuntimeError("Subscription was created without an event loop")
        self._loop.call_soon_threadsafe(self.fail, exc)

    # ── Consumer side ─────────────────────────────────────────────────────

    def unsubscribe(self) -> None:
        """Stop the listener.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        entry = await self._queue.get()
        if entry is _CLOSED or self._closed:
            raise StopAsyncIteration
        item, exc = entry
        if exc is not None:
            self.unsubscribe()
            raise exc
        return item

    async def next(self, timeout: float | None = None) -> T:
        """Wait for the next snapshot, optionally bounded by ``timeout`` seconds."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    def map(self, fn: Callable[[T], Awaitable[U]]) -> "Subscription[U]":
        """Derive a stream by transforming every snapshot with ``fn``.

        Must be called from a running event loop.  Cancelling the derived
        subscription cancels this one too.
        """
        derived: Subscription[U] = Subscription()

        async def _pump() -> None:
            try:
                async for item in self:
                    derived.push(await fn(item))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("subscription_transform_failed", error=str(exc))
                derived.fail(exc)

        task = asyncio.get_running_loop().create_task(_pump())

        def _cancel() -> None:
            task.cancel()
            self.unsubscribe()

        derived.set_on_cancel(_cancel)
        return derived


# ──────────────────────────────────────────────────────────────────────────────
# Store & transaction interfaces
# ──────────────────────────────────────────────────────────────────────────────

class Transaction(ABC):
    """Handle passed to a transaction body.

    Reads are awaited; writes are buffered and applied atomically on commit.
    Every read must precede every write.
    """

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot: ...

    @abstractmethod
    def set(self, path: str, data: dict, *, merge: bool = False) -> None: ...

    @abstractmethod
    def update(self, path: str, data: dict) -> None: ...

    @abstractmethod
    def delete(self, path: str) -> None: ...


class DocumentStore(ABC):
    """The operations the engine consumes from its document database."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot: ...

    @abstractmethod
    async def set(self, path: str, data: dict, *, merge: bool = False) -> None: ...

    @abstractmethod
    async def update(self, path: str, data: dict) -> None:
        """Merge ``data`` into an existing document; fails if it is missing."""

    @abstractmethod
    async def add(self, collection: str, data: dict) -> str:
        """Append a document with a generated id and return that id."""

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def query(self, query: Query) -> list[DocumentSnapshot]: ...

    @abstractmethod
    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        """Run ``fn`` atomically, re-running it on write conflicts."""

    @abstractmethod
    def subscribe_document(self, path: str) -> Subscription[DocumentSnapshot]: ...

    @abstractmethod
    def subscribe_query(self, query: Query) -> Subscription[QuerySnapshot]: ...

    async def close(self) -> None:
        return None
