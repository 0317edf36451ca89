# app/chat/entity/chat.py
"""
Chat room and message entities.

A room is a tagged variant: ``DirectChat`` (two parties, deterministic key,
pending until the invited party accepts) or ``CaseBoundChat`` (opened when a
case is assigned, always active, carries a back-reference to the case).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field


DIRECT_PREFIX = "direct_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def direct_room_key(user_a: str, user_b: str) -> str:
    """Same key for both orderings of the pair."""
    first, second = sorted([str(user_a), str(user_b)])
    return f"{DIRECT_PREFIX}{first}_{second}"


def case_room_key(case_type: str, case_id: str) -> str:
    return f"case_{case_type}_{case_id}_{uuid.uuid4().hex[:8]}"


class ChatKind(str, Enum):
    DIRECT = "direct"
    CASE_BOUND = "case-bound"


class ChatStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class MessageType(str, Enum):
    TEXT = "text"


class Participant(BaseModel):
    user_id: str
    role: str
    last_read_seq: int = 0
    last_read_at: Optional[datetime] = None


class LastMessage(BaseModel):
    sender_id: str
    content: str
    timestamp: datetime


class CaseRef(BaseModel):
    case_type: str
    case_id: str


class ChatRoomBase(BaseModel):
    room_key: str
    participants: List[Participant]
    status: ChatStatus = ChatStatus.ACTIVE
    last_message: Optional[LastMessage] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def participant_ids(self) -> List[str]:
        return [p.user_id for p in self.participants]

    def is_participant(self, user_id: str) -> bool:
        return str(user_id) in self.participant_ids

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == str(user_id):
                return p
        return None

    def other_participants(self, user_id: str) -> List[Participant]:
        return [p for p in self.participants if p.user_id != str(user_id)]


class DirectChat(ChatRoomBase):
    kind: Literal[ChatKind.DIRECT] = ChatKind.DIRECT
    status: ChatStatus = ChatStatus.PENDING

    @property
    def requester_id(self) -> str:
        return self.participants[0].user_id


class CaseBoundChat(ChatRoomBase):
    kind: Literal[ChatKind.CASE_BOUND] = ChatKind.CASE_BOUND
    case_ref: CaseRef


ChatRoom = Annotated[Union[DirectChat, CaseBoundChat], Field(discriminator="kind")]


class Message(BaseModel):
    """A persisted chat message. Immutable once stored."""
    id: str
    seq: int
    room_key: str
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    created_at: datetime


class ReadCursor(BaseModel):
    room_key: str
    user_id: str
    last_read_seq: int
    last_read_at: datetime


class MessagePage(BaseModel):
    """One page of history, oldest first within the page."""
    messages: List[Message] = Field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


class ChatSummary(BaseModel):
    """Room as seen in a user's chat list."""
    room: ChatRoom
    unread_count: int = 0
