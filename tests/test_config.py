"""Tests for settings validation and derived helpers."""
import pytest
from pydantic import ValidationError

from app.config import Settings


def test_window_must_cover_batch():
    with pytest.raises(ValidationError):
        Settings(STORE_BACKEND="memory", FEED_BATCH_SIZE=30, FEED_WINDOW_SIZE=10)


def test_unknown_store_backend():
    with pytest.raises(ValidationError):
        Settings(STORE_BACKEND="postgres")


def test_negative_timeout_rejected():
    with pytest.raises(ValidationError):
        Settings(STORE_BACKEND="memory", CALL_ANSWER_TIMEOUT_SECONDS=-1)


def test_ice_servers_include_turn_when_configured():
    settings = Settings(
        STORE_BACKEND="memory",
        TURN_SERVER_URL="turn:turn.example.com:3478",
        TURN_SERVER_USERNAME="amora",
        TURN_SERVER_PASSWORD="secret",
    )
    assert settings.ice_servers == [
        {"urls": "stun:stun.l.google.com:19302"},
        {"urls": "turn:turn.example.com:3478", "username": "amora", "credential": "secret"},
    ]
    assert Settings(STORE_BACKEND="MEMORY").ice_servers == [{"urls": "stun:stun.l.google.com:19302"}]


def test_allowed_origins_list():
    settings = Settings(STORE_BACKEND="memory", ALLOWED_ORIGINS="https://a.app, https://b.app")
    assert settings.allowed_origins_list == ["https://a.app", "https://b.app"]
