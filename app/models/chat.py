"""
Amora — Chat thread and message documents.

``chats/{pair_id}`` carries a denormalized ``members`` snapshot and the last
message preview.  Both are caches: they may lag behind the profiles and the
messages sub-collection and nothing here repairs them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from app.models.base import DocumentModel


class MemberSnapshot(DocumentModel):
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")


class LastMessage(DocumentModel):
    text: Optional[str] = None
    sender_id: str
    created_at: Optional[datetime] = None


class ChatThread(DocumentModel):
    id: str
    participants: list[str] = []
    members: Optional[dict[str, MemberSnapshot]] = None
    last_message: Optional[LastMessage] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def peer_of(self, uid: str) -> Optional[str]:
        for participant in self.participants:
            if participant != uid:
                return participant
        return self.participants[0] if self.participants else None


class ThreadSummary(DocumentModel):
    """A thread as seen by one participant in the conversation list."""

    id: str
    participants: list[str] = []
    peer_id: Optional[str] = None
    peer: Optional[MemberSnapshot] = None
    members: Optional[dict[str, MemberSnapshot]] = None
    last_message: Optional[LastMessage] = None
    updated_at: Optional[datetime] = None

    @property
    def is_new_match(self) -> bool:
        return self.last_message is None


class Message(DocumentModel):
    id: str
    sender_id: str
    text: str
    type: str = "text"
    created_at: Optional[datetime] = None
