from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class DirectChatRequestDTO(BaseModel):
    message: Optional[str] = Field(default=None, max_length=1000, description="Opening message shown to the lawyer")


class CaseChatRequestDTO(BaseModel):
    case_type: str = Field(..., min_length=1, max_length=64)
    case_id: str = Field(..., min_length=1, max_length=64)
    citizen_id: str = Field(..., min_length=1)
    lawyer_id: str = Field(..., min_length=1)
    case_data: Dict[str, Any] = Field(default_factory=dict)


class ParticipantResponse(BaseModel):
    user_id: str
    role: str
    last_read_at: Optional[str] = None


class LastMessageResponse(BaseModel):
    sender_id: str
    content: str
    timestamp: str


class ChatRoomResponse(BaseModel):
    room_key: str
    kind: str
    status: str
    participants: List[ParticipantResponse]
    case_type: Optional[str] = None
    case_id: Optional[str] = None
    last_message: Optional[LastMessageResponse] = None
    unread_count: Optional[int] = None
    created_at: str


class MessageResponse(BaseModel):
    id: str
    room_key: str
    sender_id: str
    content: str
    message_type: str
    timestamp: str


class MessagePageResponse(BaseModel):
    messages: List[MessageResponse]
    page: int
    limit: int
    total: int
    has_more: bool
