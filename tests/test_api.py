"""End-to-end tests of the HTTP and WebSocket API over the in-process store."""
import asyncio
from unittest.mock import MagicMock, patch

import httpx
import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.api.deps import get_app_settings, get_token_verifier
from app.exceptions import AuthenticationError, ErrorCode
from app.main import create_app
from app.session import Session
from app.utils import storage


class FakeVerifier:
    """Accepts ``token-<uid>`` and rejects everything else."""

    async def verify(self, token: str) -> Session:
        if not token:
            raise AuthenticationError("Authorization token required")
        if not token.startswith("token-"):
            raise AuthenticationError("Invalid or expired token", ErrorCode.INVALID_TOKEN)
        uid = token[len("token-"):]
        return Session(uid=uid, email=f"{uid}@example.com", claims={"name": uid.title()})


def auth(uid: str) -> dict:
    return {"Authorization": f"Bearer token-{uid}"}


@pytest.fixture
def app(store, settings):
    application = create_app()
    application.state.store = store
    application.dependency_overrides[get_token_verifier] = FakeVerifier
    application.dependency_overrides[get_app_settings] = lambda: settings
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _onboard(client, uid: str) -> dict:
    resp = await client.get("/api/v1/profiles/me", headers=auth(uid))
    assert resp.status_code == 200
    resp = await client.patch("/api/v1/profiles/me", json={"onboarded": True}, headers=auth(uid))
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Health & auth
# ---------------------------------------------------------------------------

class TestHealthAndAuth:
    async def test_liveness(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert resp.headers["x-request-id"]

    async def test_request_id_is_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["x-request-id"] == "req-123"

    async def test_missing_token(self, client):
        resp = await client.get("/api/v1/profiles/me")
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "UNAUTHORIZED"

    async def test_invalid_token(self, client):
        resp = await client.get("/api/v1/profiles/me", headers={"Authorization": "Bearer forged"})
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "INVALID_TOKEN"

    async def test_unknown_route_uses_envelope(self, client):
        resp = await client.get("/api/v1/nope", headers=auth("alice"))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "HTTP_ERROR"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

class TestProfiles:
    async def test_first_visit_creates_profile(self, client):
        resp = await client.get("/api/v1/profiles/me", headers=auth("alice"))

        body = resp.json()
        assert body["uid"] == "alice"
        assert body["displayName"] == "Alice"
        assert body["email"] == "alice@example.com"
        assert body["onboarded"] is False

    async def test_patch_profile(self, client):
        await client.get("/api/v1/profiles/me", headers=auth("alice"))
        resp = await client.patch(
            "/api/v1/profiles/me",
            json={"bio": "Coffee first", "gender": "female", "location": {"city": "Hue"}},
            headers=auth("alice"),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["bio"] == "Coffee first"
        assert body["location"]["city"] == "Hue"

    @pytest.mark.parametrize(
        "payload",
        [{"gender": "robot"}, {"roles": ["admin"]}, {"birthday": "01/02/1990"}],
    )
    async def test_patch_validation(self, client, payload):
        await client.get("/api/v1/profiles/me", headers=auth("alice"))
        resp = await client.patch("/api/v1/profiles/me", json=payload, headers=auth("alice"))
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_username_conflict(self, client):
        await client.get("/api/v1/profiles/me", headers=auth("alice"))
        await client.get("/api/v1/profiles/me", headers=auth("bob"))

        resp = await client.put("/api/v1/profiles/me/username", json={"username": "Sunny"}, headers=auth("alice"))
        assert resp.json() == {"username": "sunny"}

        resp = await client.put("/api/v1/profiles/me/username", json={"username": "sunny"}, headers=auth("bob"))
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "USERNAME_TAKEN"

    async def test_photo_upload_sets_main(self, client):
        bucket = MagicMock()
        bucket.name = "amora-test.appspot.com"
        await client.get("/api/v1/profiles/me", headers=auth("alice"))

        with patch.object(storage, "get_bucket", return_value=bucket):
            resp = await client.post(
                "/api/v1/profiles/me/photos",
                files={"file": ("me.jpg", b"\xff\xd8img", "image/jpeg")},
                data={"make_main": "true"},
                headers=auth("alice"),
            )
            assert resp.status_code == 201
            photo = resp.json()

            me = (await client.get("/api/v1/profiles/me", headers=auth("alice"))).json()
            assert me["mainPhotoId"] == photo["id"]

            resp = await client.delete(f"/api/v1/profiles/me/photos/{photo['id']}", headers=auth("alice"))
            assert resp.status_code == 204

        listed = await client.get("/api/v1/profiles/me/photos", headers=auth("alice"))
        assert listed.json() == []


# ---------------------------------------------------------------------------
# Discovery → match → chat
# ---------------------------------------------------------------------------

class TestMatchToChat:
    async def test_full_flow(self, client):
        await _onboard(client, "alice")
        await _onboard(client, "bob")

        feed = (await client.get("/api/v1/feed", headers=auth("alice"))).json()
        assert [c["uid"] for c in feed["candidates"]] == ["bob"]
        assert feed["exhausted"] is False

        first = (await client.post("/api/v1/swipes/bob/like", headers=auth("alice"))).json()
        assert first == {"matched": False, "matchId": None, "threadId": None}

        second = (await client.post("/api/v1/swipes/alice/like", headers=auth("bob"))).json()
        assert second == {"matched": True, "matchId": "alice_bob", "threadId": "alice_bob"}

        feed = (await client.get("/api/v1/feed", headers=auth("alice"))).json()
        assert feed == {"candidates": [], "exhausted": True}

        threads = (await client.get("/api/v1/chats", headers=auth("alice"))).json()
        assert [t["id"] for t in threads["newMatches"]] == ["alice_bob"]
        assert threads["newMatches"][0]["peer"]["displayName"] == "Bob"
        assert threads["conversations"] == []

        sent = (await client.post(
            "/api/v1/chats/alice_bob/messages", json={"text": " hi bob "}, headers=auth("alice")
        )).json()
        assert sent["sent"] is True and sent["messageId"]

        blank = (await client.post(
            "/api/v1/chats/alice_bob/messages", json={"text": "   "}, headers=auth("alice")
        )).json()
        assert blank == {"messageId": None, "sent": False}

        messages = (await client.get("/api/v1/chats/alice_bob/messages", headers=auth("bob"))).json()
        assert [m["text"] for m in messages] == ["hi bob"]
        assert messages[0]["senderId"] == "alice"

        threads = (await client.get("/api/v1/chats", headers=auth("bob"))).json()
        assert threads["newMatches"] == []
        assert threads["conversations"][0]["lastMessage"]["text"] == "hi bob"

    async def test_pass_excludes_from_feed(self, client):
        await _onboard(client, "alice")
        await _onboard(client, "bob")

        resp = await client.post("/api/v1/swipes/bob/pass", headers=auth("alice"))
        assert resp.json()["matched"] is False
        feed = (await client.get("/api/v1/feed", headers=auth("alice"))).json()
        assert feed["exhausted"] is True

    async def test_self_swipe_rejected(self, client):
        resp = await client.post("/api/v1/swipes/alice/like", headers=auth("alice"))
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_chat_requires_match(self, client):
        resp = await client.post("/api/v1/chats/bob", headers=auth("alice"))
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"

    async def test_open_thread_after_match(self, client):
        await client.post("/api/v1/swipes/bob/like", headers=auth("alice"))
        await client.post("/api/v1/swipes/alice/like", headers=auth("bob"))

        resp = await client.post("/api/v1/chats/bob", headers=auth("alice"))
        assert resp.json() == {"threadId": "alice_bob"}

    async def test_outsider_cannot_read_thread(self, client):
        await client.post("/api/v1/swipes/bob/like", headers=auth("alice"))
        await client.post("/api/v1/swipes/alice/like", headers=auth("bob"))

        resp = await client.get("/api/v1/chats/alice_bob/messages", headers=auth("mallory"))
        assert resp.status_code == 403
        resp = await client.get("/api/v1/chats/carol_dave/messages", headers=auth("carol"))
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# WebSocket streams
# ---------------------------------------------------------------------------

def _seed_thread(store, settings) -> None:
    from app.services.chat_service import ChatThreadService

    async def seed():
        chats = ChatThreadService(store, settings)
        await chats.ensure_thread("alice", "bob")
        await chats.send_message("alice_bob", "bob", "hello")

    asyncio.run(seed())


class TestWebSockets:
    def test_message_stream_and_send(self, app, store, settings):
        _seed_thread(store, settings)
        client = TestClient(app)

        with client.websocket_connect("/api/v1/chats/alice_bob/ws?token=token-alice") as ws:
            first = ws.receive_json()
            assert first["type"] == "messages"
            assert [m["text"] for m in first["data"]] == ["hello"]

            ws.send_json({"text": "hi there"})
            update = ws.receive_json()
            assert [m["text"] for m in update["data"]] == ["hi there", "hello"]
            assert update["data"][0]["senderId"] == "alice"

    def test_thread_stream(self, app, store, settings):
        _seed_thread(store, settings)
        client = TestClient(app)

        with client.websocket_connect("/api/v1/chats/ws?token=token-bob") as ws:
            first = ws.receive_json()
            assert first["type"] == "threads"
            assert [t["id"] for t in first["data"]] == ["alice_bob"]
            assert first["data"][0]["peerId"] == "alice"

    @pytest.mark.parametrize(
        "url",
        [
            "/api/v1/chats/alice_bob/ws?token=forged",
            "/api/v1/chats/alice_bob/ws",
            "/api/v1/chats/alice_bob/ws?token=token-mallory",
        ],
    )
    def test_rejected_connections(self, app, store, settings, url):
        _seed_thread(store, settings)
        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(url) as ws:
                ws.receive_json()
