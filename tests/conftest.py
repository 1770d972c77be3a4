"""Shared pytest fixtures for Amora tests."""
from datetime import datetime, timedelta, timezone

import pytest

from app.config import Settings
from app.store.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        STORE_BACKEND="memory",
        GCP_PROJECT_ID="amora-test",
        GCS_BUCKET_NAME="amora-test.appspot.com",
        TRANSACTION_MAX_ATTEMPTS=10,
        CALL_ANSWER_TIMEOUT_SECONDS=0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_profile(store):
    """Write a ``users/{uid}`` document; ``age_rank`` orders ``updatedAt``."""
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)

    async def _make(uid: str, age_rank: int = 0, **fields) -> dict:
        doc = {
            "uid": uid,
            "email": f"{uid}@example.com",
            "displayName": fields.pop("displayName", uid.capitalize()),
            "photoURL": None,
            "roles": ["user"],
            "onboarded": fields.pop("onboarded", True),
            "interests": [],
            "languages": [],
            "updatedAt": base + timedelta(minutes=age_rank),
            **fields,
        }
        await store.set(f"users/{uid}", doc)
        return doc

    return _make

