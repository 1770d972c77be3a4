from pydantic import BaseModel, Field
from typing import Optional

from app.models.profile import Candidate


class FeedResponse(BaseModel):
    candidates: list[Candidate]
    exhausted: bool


class SwipeResponse(BaseModel):
    matched: bool
    match_id: Optional[str] = Field(None, serialization_alias="matchId")
    thread_id: Optional[str] = Field(None, serialization_alias="threadId")
