"""WebSocket event envelopes and payloads.

Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
directions. Payload keys are camelCase on the wire.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.chat.entity.chat import Message


class ClientEvent(str, Enum):
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    MARK_MESSAGES_READ = "mark_messages_read"
    UPDATE_STATUS = "update_status"


class ServerEvent(str, Enum):
    CHAT_JOINED = "chat_joined"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    MESSAGES_READ = "messages_read"
    USER_TYPING = "user_typing"
    USER_STOP_TYPING = "user_stop_typing"
    USER_STATUS_UPDATE = "user_status_update"
    ERROR = "error"


class WsInbound(BaseModel):
    """Client → Server."""
    event: str
    data: Any = None


class WsOutbound(BaseModel):
    """Server → Client."""
    event: str
    data: dict = Field(default_factory=dict)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Client payloads ─────────────────────────────────────────────

class RoomPayload(WireModel):
    room_key: str = Field(min_length=1)


class SendMessagePayload(WireModel):
    room_key: str = Field(min_length=1)
    content: str = ""
    temp_id: Optional[str] = None
    message_type: str = "text"


class MarkReadPayload(WireModel):
    room_key: str = Field(min_length=1)
    message_ids: Optional[List[str]] = None


class StatusPayload(WireModel):
    status: str = Field(min_length=1, max_length=32)


def parse_room_payload(data: Any) -> RoomPayload:
    """Room events accept either a bare room key or ``{"roomKey": ...}``."""
    if isinstance(data, str):
        return RoomPayload(room_key=data)
    return RoomPayload.model_validate(data)


def parse_status_payload(data: Any) -> StatusPayload:
    if isinstance(data, str):
        return StatusPayload(status=data)
    return StatusPayload.model_validate(data)


# ── Server payloads ─────────────────────────────────────────────

class SenderSummary(WireModel):
    user_id: str
    name: str = ""
    role: str = ""


class NewMessageData(WireModel):
    id: str
    room_key: str
    content: str
    message_type: str
    sender: SenderSummary
    timestamp: str
    temp_id: Optional[str] = None

    @classmethod
    def from_message(cls, message: Message, sender: SenderSummary,
                     temp_id: Optional[str] = None) -> "NewMessageData":
        return cls(
            id=message.id,
            room_key=message.room_key,
            content=message.content,
            message_type=message.message_type.value,
            sender=sender,
            timestamp=message.created_at.isoformat(),
            temp_id=temp_id,
        )


class MessageSentData(WireModel):
    success: bool = True
    message_id: str
    room_key: str
    timestamp: str
    temp_id: Optional[str] = None


class ErrorData(WireModel):
    message: str
    code: Optional[str] = None
    event: Optional[str] = None
    room_key: Optional[str] = None
    temp_id: Optional[str] = None
