"""
Amora — Discovery API

Swipe feed and swipe decisions.  A like that completes a mutual match also
opens the pair's chat thread, after the match transaction has committed.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import (
    CurrentSession,
    get_candidate_feed,
    get_chat_service,
    get_profile_service,
    get_swipe_engine,
)
from app.models.profile import DiscoveryPreferences
from app.schemas.match import FeedResponse, SwipeResponse
from app.services.candidate_feed import CandidateFeed
from app.services.chat_service import ChatThreadService
from app.services.profile_service import ProfileService
from app.services.swipe_service import SwipeEngine

logger = structlog.get_logger("amora.api.discovery")

router = APIRouter()


@router.get("/feed", response_model=FeedResponse, summary="Next batch of candidates")
async def get_feed(
    session: CurrentSession,
    limit: Optional[int] = Query(None, ge=1, le=100),
    feed: CandidateFeed = Depends(get_candidate_feed),
    profiles: ProfileService = Depends(get_profile_service),
) -> FeedResponse:
    profile = await profiles.get_profile(session.uid)
    preferences: Optional[DiscoveryPreferences] = profile.preferences if profile else None
    candidates = await feed.fetch_candidates(session.uid, preferences=preferences, limit=limit)
    return FeedResponse(candidates=candidates, exhausted=not candidates)


@router.post("/swipes/{target_uid}/like", response_model=SwipeResponse, summary="Like a candidate")
async def like(
    target_uid: str,
    session: CurrentSession,
    swipes: SwipeEngine = Depends(get_swipe_engine),
    chats: ChatThreadService = Depends(get_chat_service),
) -> SwipeResponse:
    result = await swipes.record_like(session.uid, target_uid)
    if not result.matched:
        return SwipeResponse(matched=False)
    thread_id = await chats.ensure_thread(session.uid, target_uid)
    logger.info("match_thread_ready", uid=session.uid, target_uid=target_uid, thread_id=thread_id)
    return SwipeResponse(matched=True, match_id=result.match_id, thread_id=thread_id)


@router.post("/swipes/{target_uid}/pass", response_model=SwipeResponse, summary="Pass on a candidate")
async def pass_(
    target_uid: str,
    session: CurrentSession,
    swipes: SwipeEngine = Depends(get_swipe_engine),
) -> SwipeResponse:
    await swipes.record_pass(session.uid, target_uid)
    return SwipeResponse(matched=False)
