"""
Amora — Swipe Engine

Records swipe decisions and detects mutual likes.

Exactly-once match creation
---------------------------
``record_like`` runs as a single optimistic transaction that reads, before
writing anything:

  (a) the requester's own decision  ``users/{from}/swipes/{to}``
  (b) the peer's decision           ``users/{to}/swipes/{from}``
  (c) the match record              ``matches/{pair_id}``

It then writes the like (if no decision exists yet) and, when (b) is a like
and (c) is absent, creates the match.  If two users like each other at the
same moment, whichever transaction commits second sees its reads invalidated
by the first commit and is re-run; on the re-run it sees the match and does
not create another.  Decisions are immutable: once a decision exists, a later
swipe in either direction is a no-op.

Thread creation is *not* part of the transaction.  Callers that get
``matched=True`` invoke ``ChatThreadService.ensure_thread`` afterwards.
"""

from __future__ import annotations

import structlog

from app.config import Settings, get_settings
from app.exceptions import InvalidInputError
from app.models import MATCHES, SWIPES, USERS
from app.models.match import SwipeDirection, SwipeResult
from app.store import SERVER_TIMESTAMP, DocumentStore, Transaction, join_path
from app.utils.ids import pair_id

logger = structlog.get_logger("amora.swipe_service")


def _validate_pair(from_uid: str, to_uid: str) -> None:
    if not from_uid or not to_uid:
        raise InvalidInputError("Both the swiper and the target are required")
    if from_uid == to_uid:
        raise InvalidInputError("Users cannot swipe on themselves", details={"uid": from_uid})


class SwipeEngine:
    """Writes swipe decisions and creates ``Match`` records exactly once."""

    def __init__(self, store: DocumentStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    @staticmethod
    def decision_path(from_uid: str, to_uid: str) -> str:
        return join_path(USERS, from_uid, SWIPES, to_uid)

    async def record_pass(self, from_uid: str, to_uid: str) -> None:
        """Write a pass decision unless a decision already exists."""
        _validate_pair(from_uid, to_uid)
        path = self.decision_path(from_uid, to_uid)

        async def _pass(tx: Transaction) -> bool:
            existing = await tx.get(path)
            if existing.exists:
                return False
            tx.set(path, {"direction": SwipeDirection.PASS.value, "createdAt": SERVER_TIMESTAMP})
            return True

        written = await self.store.run_transaction(
            _pass, max_attempts=self.settings.TRANSACTION_MAX_ATTEMPTS
        )
        logger.info("record_pass", from_uid=from_uid, to_uid=to_uid, written=written)

    async def record_like(self, from_uid: str, to_uid: str) -> SwipeResult:
        """Write a like and report whether it completed a mutual match.

        Decisions are immutable, so a like after one's own earlier pass never matches.
        """
        _validate_pair(from_uid, to_uid)
        match_id = pair_id(from_uid, to_uid)
        log = logger.bind(from_uid=from_uid, to_uid=to_uid, match_id=match_id)
        log.info("record_like_start")

        own_path = self.decision_path(from_uid, to_uid)
        peer_path = self.decision_path(to_uid, from_uid)
        match_path = join_path(MATCHES, match_id)

        async def _like(tx: Transaction) -> bool:
            own = await tx.get(own_path)
            peer = await tx.get(peer_path)
            match = await tx.get(match_path)

            if not own.exists:
                tx.set(own_path, {"direction": SwipeDirection.LIKE.value, "createdAt": SERVER_TIMESTAMP})

            own_is_pass = own.exists and own.get("direction") == SwipeDirection.PASS
            peer_likes = peer.exists and peer.get("direction") == SwipeDirection.LIKE
            if own_is_pass or not peer_likes or match.exists:
                return False

            tx.set(
                match_path,
                {
                    "users": sorted([from_uid, to_uid]),
                    "createdAt": SERVER_TIMESTAMP,
                    "lastMessageAt": None,
                },
            )
            return True

        matched = await self.store.run_transaction(
            _like, max_attempts=self.settings.TRANSACTION_MAX_ATTEMPTS
        )
        if matched:
            log.info("match_created")
            return SwipeResult(matched=True, match_id=match_id)
        log.info("record_like_no_match")
        return SwipeResult(matched=False)

    async def is_match(self, uid_a: str, uid_b: str) -> bool:
        snap = await self.store.get(join_path(MATCHES, pair_id(uid_a, uid_b)))
        return snap.exists
