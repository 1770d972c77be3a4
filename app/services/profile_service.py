"""
Amora — Profile Store

Owns ``users/{uid}`` and the user's outgoing swipe decisions:
  * get / upsert-on-login / patch of the profile document
  * username claims, unique across users via ``usernames/{username}``
  * the set of targets a user has already decided on (feed exclusion)

Profiles are written only by their owner and nothing here deletes one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from app.config import Settings, get_settings
from app.exceptions import InvalidInputError, NotFoundError, UsernameTakenError
from app.models import SWIPES, USERNAMES, USERS
from app.models.match import SwipeDirection
from app.models.profile import UserProfile
from app.store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, Query, Transaction, join_path

logger = structlog.get_logger("amora.profile_service")

_USERNAME_RE = re.compile(r"^[a-z0-9._-]{3,20}$")

# Fields a profile patch may never touch.
_PROTECTED_FIELDS: frozenset[str] = frozenset(
    {"uid", "email", "roles", "createdAt", "lastLoginAt", "username", "mainPhotoId"}
)

DEFAULT_PREFERRED_GENDERS: list[str] = ["female", "male", "nonbinary"]


def normalize_username(raw: str) -> str:
    username = (raw or "").strip().lower()
    if not _USERNAME_RE.match(username):
        raise InvalidInputError(
            "Username must be 3-20 characters of a-z, 0-9, '.', '_' or '-'",
            details={"username": raw},
        )
    return username


def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_none(v) for v in value if v is not None]
    return value


def profile_from_snapshot(snap: DocumentSnapshot) -> UserProfile:
    data = snap.to_dict()
    data.setdefault("uid", snap.id)
    return UserProfile.model_validate(data)


@dataclass
class SwipedIds:
    """Targets a user has already decided on, split by direction."""

    likes: set[str] = field(default_factory=set)
    passes: set[str] = field(default_factory=set)

    @property
    def all(self) -> set[str]:
        return self.likes | self.passes


class ProfileService:
    """Reads and writes user profile documents."""

    def __init__(self, store: DocumentStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_profile(self, uid: str) -> Optional[UserProfile]:
        if not uid:
            raise InvalidInputError("uid is required")
        snap = await self.store.get(join_path(USERS, uid))
        if not snap.exists:
            return None
        return profile_from_snapshot(snap)

    async def require_profile(self, uid: str) -> UserProfile:
        profile = await self.get_profile(uid)
        if profile is None:
            raise NotFoundError("Profile", uid)
        return profile

    async def get_swiped_ids(self, uid: str) -> SwipedIds:
        """Every target ``uid`` has liked or passed, however old."""
        if not uid:
            raise InvalidInputError("uid is required")
        docs = await self.store.query(Query(join_path(USERS, uid, SWIPES)))
        swiped = SwipedIds()
        for doc in docs:
            if doc.get("direction") == SwipeDirection.PASS:
                swiped.passes.add(doc.id)
            else:
                swiped.likes.add(doc.id)
        return swiped

    # ── Writes ────────────────────────────────────────────────────────────

    async def upsert_on_login(
        self,
        uid: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> UserProfile:
        """Record a sign-in, creating the default profile the first time.

        Existing profiles only get ``lastLoginAt``/``updatedAt`` touched plus
        any identity fields the token supplied; edited fields are not reset.
        """
        if not uid:
            raise InvalidInputError("uid is required")
        log = logger.bind(uid=uid)
        path = join_path(USERS, uid)
        snap = await self.store.get(path)

        payload: dict[str, Any] = {
            "uid": uid,
            "updatedAt": SERVER_TIMESTAMP,
            "lastLoginAt": SERVER_TIMESTAMP,
        }
        if email is not None:
            payload["email"] = email
        if display_name is not None and not snap.get("displayName"):
            payload["displayName"] = display_name
        if photo_url is not None and not snap.get("photoURL"):
            payload["photoURL"] = photo_url

        if not snap.exists:
            payload = {
                "email": "",
                "displayName": None,
                "photoURL": None,
                "roles": ["user"],
                "onboarded": False,
                "interests": [],
                "languages": [],
                "preferences": {"genders": list(DEFAULT_PREFERRED_GENDERS)},
                "createdAt": SERVER_TIMESTAMP,
                **payload,
            }
            log.info("profile_created")
        else:
            log.debug("profile_login_touched")

        await self.store.set(path, payload, merge=True)
        return await self.require_profile(uid)

    async def update_fields(self, uid: str, patch: dict[str, Any]) -> UserProfile:
        """Merge ``patch`` (camelCase document fields) into the profile.

        ``None`` values are dropped at any depth so a partial form never
        erases data.  Nested maps merge rather than replace.
        """
        if not uid:
            raise InvalidInputError("uid is required")
        protected = sorted(set(patch) & _PROTECTED_FIELDS)
        if protected:
            raise InvalidInputError("Fields cannot be edited directly", details={"fields": protected})

        clean = _strip_none(patch)
        await self.require_profile(uid)
        await self.store.set(
            join_path(USERS, uid),
            {**clean, "updatedAt": SERVER_TIMESTAMP},
            merge=True,
        )
        logger.info("profile_fields_updated", uid=uid, fields=sorted(clean))
        return await self.require_profile(uid)

    async def claim_username(self, uid: str, raw_username: str) -> str:
        """Reserve a unique username for ``uid`` and stamp it on the profile.

        Re-claiming a name the user already holds succeeds.  The previous
        name (if any) stays reserved.
        """
        if not uid:
            raise InvalidInputError("uid is required")
        username = normalize_username(raw_username)
        claim_path = join_path(USERNAMES, username)
        user_path = join_path(USERS, uid)

        async def _claim(tx: Transaction) -> None:
            taken = await tx.get(claim_path)
            if taken.exists and taken.get("uid") != uid:
                raise UsernameTakenError(username)
            tx.set(claim_path, {"uid": uid, "createdAt": SERVER_TIMESTAMP})
            tx.set(user_path, {"username": username, "updatedAt": SERVER_TIMESTAMP}, merge=True)

        await self.store.run_transaction(
            _claim, max_attempts=self.settings.TRANSACTION_MAX_ATTEMPTS
        )
        logger.info("username_claimed", uid=uid, username=username)
        return username
