from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from marketplace.domain.errors import InvalidMessageDataError


class MessageType(str, Enum):
    text = "text"
    image = "image"
    file = "file"
    location = "location"


class ChatMessageCreateRequest(BaseModel):
    receiver_id: str = Field(min_length=1)
    content: str = Field(min_length=1, max_length=4000)
    message_type: MessageType = MessageType.text


class ChatMessageRecord(BaseModel):
    message_id: int
    thread_key: str
    sender_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    message_type: MessageType
    timestamp: datetime
    is_read: bool = False


@dataclass
class ChatHistory:
    messages: list[ChatMessageRecord] = field(default_factory=list)
    errors: list[InvalidMessageDataError] = field(default_factory=list)


class SkippedRecord(BaseModel):
    detail: str
    errors: list[dict] | None = None


class ChatHistoryResponse(BaseModel):
    thread_key: str
    messages: list[ChatMessageRecord]
    skipped: list[SkippedRecord] = Field(default_factory=list)


class ChatSummary(BaseModel):
    thread_key: str
    other_party_id: str
    last_message: str | None = None
    last_message_time: datetime | None = None
    unread_count: int = 0


class MarkReadResponse(BaseModel):
    thread_key: str
    updated: int
