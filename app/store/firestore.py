"""
Amora — Google Cloud Firestore backend

Reads, writes and transactions go through ``firestore.AsyncClient``.  The
async client has no snapshot listeners, so live subscriptions use the
synchronous ``firestore.Client``: its ``on_snapshot`` callbacks fire on a
background thread and are marshalled onto the event loop through
``Subscription.push_threadsafe``.

Errors raised by the client library (``google.api_core.exceptions.*``)
propagate unchanged.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter

from app.store.base import (
    SERVER_TIMESTAMP,
    DocumentChange,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    Subscription,
    Transaction,
)

logger = structlog.get_logger("amora.store.firestore")

T = TypeVar("T")


def _encode(value: Any) -> Any:
    """Swap our timestamp sentinel for Firestore's."""
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _to_snapshot(snap: Any, path: str | None = None) -> DocumentSnapshot:
    return DocumentSnapshot(
        path=path or snap.reference.path,
        data=snap.to_dict() if snap.exists else None,
        create_time=getattr(snap, "create_time", None),
        update_time=getattr(snap, "update_time", None),
    )


class _FirestoreTransaction(Transaction):
    def __init__(self, client: firestore.AsyncClient, transaction: Any) -> None:
        self._client = client
        self._transaction = transaction

    async def get(self, path: str) -> DocumentSnapshot:
        snap = await self._client.document(path).get(transaction=self._transaction)
        return _to_snapshot(snap, path)

    def set(self, path: str, data: dict, *, merge: bool = False) -> None:
        self._transaction.set(self._client.document(path), _encode(data), merge=merge)

    def update(self, path: str, data: dict) -> None:
        self._transaction.update(self._client.document(path), _encode(data))

    def delete(self, path: str) -> None:
        self._transaction.delete(self._client.document(path))


class FirestoreStore(DocumentStore):
    """``DocumentStore`` backed by Cloud Firestore."""

    def __init__(self, project: str | None = None, database: str = "(default)") -> None:
        self._client = firestore.AsyncClient(project=project or None, database=database)
        self._listen_client = firestore.Client(project=project or None, database=database)
        logger.info("firestore_store_created", project=project, database=database)

    def _build_query(self, client: Any, query: Query) -> Any:
        ref = client.collection(query.collection)
        for flt in query.filters:
            ref = ref.where(filter=FirestoreFieldFilter(flt.field, flt.op, flt.value))
        if query.order_by is not None:
            direction = (
                firestore.Query.DESCENDING if query.descending else firestore.Query.ASCENDING
            )
            ref = ref.order_by(query.order_by, direction=direction)
        if query.limit is not None:
            ref = ref.limit(query.limit)
        return ref

    # ── Point operations ──────────────────────────────────────────────────

    async def get(self, path: str) -> DocumentSnapshot:
        snap = await self._client.document(path).get()
        return _to_snapshot(snap, path)

    async def set(self, path: str, data: dict, *, merge: bool = False) -> None:
        await self._client.document(path).set(_encode(data), merge=merge)

    async def update(self, path: str, data: dict) -> None:
        await self._client.document(path).update(_encode(data))

    async def add(self, collection: str, data: dict) -> str:
        _, ref = await self._client.collection(collection).add(_encode(data))
        return ref.id

    async def delete(self, path: str) -> None:
        await self._client.document(path).delete()

    async def query(self, query: Query) -> list[DocumentSnapshot]:
        docs = await self._build_query(self._client, query).get()
        return [_to_snapshot(d) for d in docs]

    # ── Transactions ──────────────────────────────────────────────────────

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        transaction = self._client.transaction(max_attempts=max_attempts)

        @firestore.async_transactional
        async def _body(tx: Any) -> T:
            return await fn(_FirestoreTransaction(self._client, tx))

        return await _body(transaction)

    # ── Listeners ─────────────────────────────────────────────────────────

    def subscribe_document(self, path: str) -> Subscription[DocumentSnapshot]:
        sub: Subscription[DocumentSnapshot] = Subscription(loop=asyncio.get_running_loop())

        def _on_snapshot(docs: list, changes: list, read_time: Any) -> None:
            if docs:
                sub.push_threadsafe(_to_snapshot(docs[0], path))
            else:
                sub.push_threadsafe(DocumentSnapshot(path=path, data=None))

        watch = self._listen_client.document(path).on_snapshot(_on_snapshot)
        sub.set_on_cancel(watch.unsubscribe)
        logger.debug("document_listener_started", path=path)
        return sub

    def subscribe_query(self, query: Query) -> Subscription[QuerySnapshot]:
        sub: Subscription[QuerySnapshot] = Subscription(loop=asyncio.get_running_loop())

        def _on_snapshot(docs: list, changes: list, read_time: Any) -> None:
            sub.push_threadsafe(QuerySnapshot(
                documents=[_to_snapshot(d) for d in docs],
                changes=[
                    DocumentChange(c.type.name.lower(), _to_snapshot(c.document))
                    for c in changes
                ],
            ))

        watch = self._build_query(self._listen_client, query).on_snapshot(_on_snapshot)
        sub.set_on_cancel(watch.unsubscribe)
        logger.debug("query_listener_started", collection=query.collection)
        return sub

    async def close(self) -> None:
        for client in (self._client, self._listen_client):
            result = client.close()
            if inspect.isawaitable(result):
                await result
        logger.info("firestore_store_closed")
