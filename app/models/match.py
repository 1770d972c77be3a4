"""
Amora — Swipe decisions and matches.

``users/{from_uid}/swipes/{to_uid}`` holds one immutable decision per
directed pair; ``matches/{pair_id}`` holds one record per mutual like.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel

from app.models.base import DocumentModel


class SwipeDirection(StrEnum):
    LIKE = "like"
    PASS = "pass"


class SwipeDecision(DocumentModel):
    id: str  # target uid
    direction: SwipeDirection
    created_at: Optional[datetime] = None


class Match(DocumentModel):
    id: str  # canonical pair id
    users: list[str]
    created_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class SwipeResult(BaseModel):
    matched: bool
    match_id: Optional[str] = None
