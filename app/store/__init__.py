"""
Amora — Document store package.

``create_store()`` picks the backend named by ``STORE_BACKEND``.
"""

from app.config import Settings, get_settings
from app.store.base import (
    SERVER_TIMESTAMP,
    DocumentChange,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    ReadAfterWriteError,
    StoreError,
    Subscription,
    Transaction,
    TransactionConflictError,
    join_path,
)


def create_store(settings: Settings | None = None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.STORE_BACKEND == "memory":
        from app.store.memory import MemoryStore

        return MemoryStore()

    from app.store.firestore import FirestoreStore

    return FirestoreStore(
        project=settings.GCP_PROJECT_ID,
        database=settings.FIRESTORE_DATABASE,
    )


__all__ = [
    "SERVER_TIMESTAMP",
    "DocumentChange",
    "DocumentNotFoundError",
    "DocumentSnapshot",
    "DocumentStore",
    "Query",
    "QuerySnapshot",
    "ReadAfterWriteError",
    "StoreError",
    "Subscription",
    "Transaction",
    "TransactionConflictError",
    "create_store",
    "join_path",
]
