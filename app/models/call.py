"""
Amora — Voice-call signaling documents.

One ``CallSession`` per chat thread at ``chats/{thread_id}/webrtc/call``;
each call attempt overwrites it.  ICE candidates live in the
``offerCandidates`` and ``answerCandidates`` sub-collections in the JSON
shape browsers and mobile WebRTC stacks produce
(``candidate``, ``sdpMid``, ``sdpMLineIndex``).
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.base import DocumentModel


class CallState(StrEnum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    ENDED = "ended"


class SessionDescription(BaseModel):
    type: str  # "offer" | "answer"
    sdp: str = ""


class SignalingDescription(DocumentModel):
    """A session description as persisted, with its routing."""

    type: str
    sdp: str = ""
    from_uid: Optional[str] = Field(None, alias="from")
    to_uid: Optional[str] = Field(None, alias="to")

    def description(self) -> SessionDescription:
        return SessionDescription(type=self.type, sdp=self.sdp or "")


class IceCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    candidate: str
    sdp_mid: Optional[str] = Field(None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(None, alias="sdpMLineIndex")

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class CallSession(DocumentModel):
    offer: Optional[SignalingDescription] = None
    answer: Optional[SignalingDescription] = None
    created_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
