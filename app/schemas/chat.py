from pydantic import BaseModel, Field
from typing import Optional

from app.models.chat import ThreadSummary


class ThreadListResponse(BaseModel):
    new_matches: list[ThreadSummary] = Field(serialization_alias="newMatches")
    conversations: list[ThreadSummary]


class ThreadCreated(BaseModel):
    thread_id: str = Field(serialization_alias="threadId")


class SendMessageRequest(BaseModel):
    text: str = Field(max_length=4000)


class SendMessageResponse(BaseModel):
    message_id: Optional[str] = Field(None, serialization_alias="messageId")
    sent: bool
