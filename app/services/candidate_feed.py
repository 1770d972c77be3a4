"""
Amora — Candidate Feed

Produces the next batch of profiles a user has not yet decided on:

  1. Query onboarded profiles, most recently updated first, over-fetching a
     window of ``FEED_WINDOW_SIZE`` documents.
  2. Read the requester's full set of prior decisions (likes *and* passes).
  3. Drop the requester, decided targets and anything not onboarded.
  4. Apply discovery preferences (gender list, age range) when given.
  5. Truncate to the batch size (``FEED_BATCH_SIZE``).

An empty result means the feed is exhausted, not that something failed.
Store errors propagate unchanged; the feed never retries on its own.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from app.config import Settings, get_settings
from app.exceptions import InvalidInputError
from app.models import USERS
from app.models.profile import Candidate, DiscoveryPreferences, UserProfile
from app.services.profile_service import ProfileService, profile_from_snapshot
from app.store import DocumentStore, Query

logger = structlog.get_logger("amora.candidate_feed")


def matches_preferences(profile: UserProfile, preferences: Optional[DiscoveryPreferences]) -> bool:
    """Whether ``profile`` passes the requester's discovery preferences.

    Missing data never excludes: an undeclared gender passes a gender list
    and an unknown age passes an age range.
    """
    if preferences is None:
        return True
    if preferences.genders and profile.gender and profile.gender not in preferences.genders:
        return False
    age = profile.age
    if age is not None:
        if preferences.age_min is not None and age < preferences.age_min:
            return False
        if preferences.age_max is not None and age > preferences.age_max:
            return False
    return True


class CandidateFeed:
    """Swipe-feed candidate selection for one requester at a time."""

    def __init__(
        self,
        store: DocumentStore,
        profiles: ProfileService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.profiles = profiles or ProfileService(store, self.settings)

    async def fetch_candidates(
        self,
        uid: str,
        preferences: Optional[DiscoveryPreferences] = None,
        limit: Optional[int] = None,
    ) -> list[Candidate]:
        if not uid:
            raise InvalidInputError("uid is required")
        limit = limit or self.settings.FEED_BATCH_SIZE
        window = max(self.settings.FEED_WINDOW_SIZE, limit)
        log = logger.bind(uid=uid, limit=limit)

        query = (
            Query(USERS)
            .where("onboarded", "==", True)
            .order("updatedAt", descending=True)
            .take(window)
        )
        docs = await self.store.query(query)
        decided = (await self.profiles.get_swiped_ids(uid)).all

        candidates: list[Candidate] = []
        for doc in docs:
            if doc.id == uid or doc.id in decided:
                continue
            try:
                profile = profile_from_snapshot(doc)
            except ValidationError as exc:
                log.warning("candidate_profile_invalid", candidate=doc.id, error=str(exc))
                continue
            if not profile.onboarded or profile.uid == uid:
                continue
            if not matches_preferences(profile, preferences):
                continue
            candidates.append(Candidate.from_profile(profile))
            if len(candidates) >= limit:
                break

        log.info(
            "candidates_fetched",
            window=len(docs),
            decided=len(decided),
            returned=len(candidates),
        )
        return candidates
