"""
Amora — Chat Thread Service

One conversation thread per matched pair, keyed by the canonical pair id
(``chats/{pair_id}``), with messages appended under
``chats/{pair_id}/messages``.

Consistency model:
  * ``ensure_thread`` is transactional and idempotent: concurrent calls for
    the same pair leave exactly one thread document.
  * ``send_message`` appends the message and then merges the thread's
    ``lastMessage``/``updatedAt`` in a second, separate write.  A reader may
    briefly see the new message before the summary moves (or the reverse if
    the second write fails); nothing reconciles this.
  * ``members`` is a display cache copied from the profiles when the thread
    is created.  It is never repaired; readers fall back to the live profile
    when it is missing.
"""

from __future__ import annotations

from typing import Optional

import structlog

from app.config import Settings, get_settings
from app.exceptions import ForbiddenError, InvalidInputError, NotFoundError
from app.models import CHATS, MESSAGES, USERS
from app.models.chat import ChatThread, MemberSnapshot, Message, ThreadSummary
from app.models.profile import DEFAULT_DISPLAY_NAME
from app.store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    Subscription,
    Transaction,
    join_path,
)
from app.utils.ids import pair_id

logger = structlog.get_logger("amora.chat_service")


def partition_threads(
    threads: list[ThreadSummary],
) -> tuple[list[ThreadSummary], list[ThreadSummary]]:
    """Split an ordered thread list into (new matches, conversations).

    New matches have no message yet.  Both halves keep the input order.
    """
    new_matches = [t for t in threads if t.last_message is None]
    conversations = [t for t in threads if t.last_message is not None]
    return new_matches, conversations


def _member(profile: DocumentSnapshot) -> dict:
    return {
        "displayName": profile.get("displayName") or DEFAULT_DISPLAY_NAME,
        "photoURL": profile.get("photoURL"),
    }


class ChatThreadService:
    """Thread lifecycle, message append and live thread/message streams."""

    def __init__(self, store: DocumentStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ── Threads ───────────────────────────────────────────────────────────

    @staticmethod
    def thread_id_for(uid_a: str, uid_b: str) -> str:
        return pair_id(uid_a, uid_b)

    async def ensure_thread(self, uid_a: str, uid_b: str) -> str:
        """Create the pair's thread if it does not exist; return its id."""
        thread_id = self.thread_id_for(uid_a, uid_b)
        thread_path = join_path(CHATS, thread_id)
        log = logger.bind(thread_id=thread_id)

        async def _ensure(tx: Transaction) -> bool:
            existing = await tx.get(thread_path)
            if existing.exists:
                return False
            profile_a = await tx.get(join_path(USERS, uid_a))
            profile_b = await tx.get(join_path(USERS, uid_b))
            tx.set(
                thread_path,
                {
                    "participants": sorted([uid_a, uid_b]),
                    "members": {
                        uid_a: _member(profile_a),
                        uid_b: _member(profile_b),
                    },
                    "lastMessage": None,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
            return True

        created = await self.store.run_transaction(
            _ensure, max_attempts=self.settings.TRANSACTION_MAX_ATTEMPTS
        )
        log.info("thread_created" if created else "thread_exists")
        return thread_id

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        snap = await self.store.get(join_path(CHATS, thread_id))
        if not snap.exists:
            return None
        return ChatThread.from_snapshot(snap)

    async def require_participant(self, thread_id: str, uid: str) -> ChatThread:
        """Load the thread, failing unless ``uid`` is one of its participants."""
        thread = await self.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread", thread_id)
        if uid not in thread.participants:
            raise ForbiddenError("Not a participant of this conversation")
        return thread

    # ── Messages ──────────────────────────────────────────────────────────

    async def send_message(self, thread_id: str, sender_id: str, text: str) -> Optional[str]:
        """Append a text message; returns its id, or None for blank text."""
        if not thread_id or not sender_id:
            raise InvalidInputError("thread_id and sender_id are required")
        trimmed = (text or "").strip()
        log = logger.bind(thread_id=thread_id, sender_id=sender_id)
        if not trimmed:
            log.debug("send_message_skipped_empty")
            return None

        message_id = await self.store.add(
            join_path(CHATS, thread_id, MESSAGES),
            {
                "text": trimmed,
                "senderId": sender_id,
                "createdAt": SERVER_TIMESTAMP,
                "type": "text",
            },
        )
        await self.store.set(
            join_path(CHATS, thread_id),
            {
                "lastMessage": {
                    "text": trimmed,
                    "senderId": sender_id,
                    "createdAt": SERVER_TIMESTAMP,
                },
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
        log.info("message_sent", message_id=message_id, length=len(trimmed))
        return message_id

    def _messages_query(self, thread_id: str, limit: Optional[int]) -> Query:
        return (
            Query(join_path(CHATS, thread_id, MESSAGES))
            .order("createdAt", descending=True)
            .take(limit or self.settings.MESSAGES_PAGE_SIZE)
        )

    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> list[Message]:
        """Newest-first page of messages."""
        docs = await self.store.query(self._messages_query(thread_id, limit))
        return [Message.from_snapshot(d) for d in docs]

    def subscribe_messages(
        self, thread_id: str, limit: Optional[int] = None
    ) -> Subscription[list[Message]]:
        """Live newest-first message list; a fresh list on every change."""
        source = self.store.subscribe_query(self._messages_query(thread_id, limit))

        async def _to_messages(snapshot: QuerySnapshot) -> list[Message]:
            return [Message.from_snapshot(d) for d in snapshot.documents]

        return source.map(_to_messages)

    # ── Thread lists ──────────────────────────────────────────────────────

    @staticmethod
    def _threads_query(uid: str) -> Query:
        return (
            Query(CHATS)
            .where("participants", "array_contains", uid)
            .order("updatedAt", descending=True)
        )

    async def _summarize(self, uid: str, docs: list[DocumentSnapshot]) -> list[ThreadSummary]:
        summaries: list[ThreadSummary] = []
        for doc in docs:
            thread = ChatThread.from_snapshot(doc)
            peer_id = thread.peer_of(uid)
            peer = (thread.members or {}).get(peer_id) if peer_id else None
            if peer is None and peer_id:
                # members cache missing: read the peer's live profile
                profile = await self.store.get(join_path(USERS, peer_id))
                peer = MemberSnapshot.model_validate(_member(profile))
            summaries.append(
                ThreadSummary(
                    id=thread.id,
                    participants=thread.participants,
                    peer_id=peer_id,
                    peer=peer,
                    members=thread.members,
                    last_message=thread.last_message,
                    updated_at=thread.updated_at,
                )
            )
        return summaries

    async def list_threads(self, uid: str) -> list[ThreadSummary]:
        if not uid:
            raise InvalidInputError("uid is required")
        docs = await self.store.query(self._threads_query(uid))
        return await self._summarize(uid, docs)

    def subscribe_threads(self, uid: str) -> Subscription[list[ThreadSummary]]:
        """Live list of ``uid``'s threads, most recently active first.

        Never ends on its own; call ``unsubscribe()`` when done.
        """
        if not uid:
            raise InvalidInputError("uid is required")
        source = self.store.subscribe_query(self._threads_query(uid))

        async def _to_summaries(snapshot: QuerySnapshot) -> list[ThreadSummary]:
            return await self._summarize(uid, snapshot.documents)

        return source.map(_to_summaries)
