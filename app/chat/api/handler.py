from typing import Optional

from fastapi import HTTPException, status

from app.chat.api.dto import (
    ChatRoomResponse, LastMessageResponse, MessagePageResponse, MessageResponse, ParticipantResponse,
)
from app.chat.entity.chat import CaseBoundChat, ChatRoom, Message, MessagePage
from app.chat.errors import (
    AccessDenied, AuthenticationError, ChatError, ChatNotFound, PersistenceError, RateLimited, ValidationError,
)

_STATUS_BY_ERROR = {
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    AccessDenied: status.HTTP_403_FORBIDDEN,
    ChatNotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(error: ChatError) -> HTTPException:
    """Map a chat error to the HTTP status the API reports for it."""
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


def room_to_response(room: ChatRoom, unread_count: Optional[int] = None) -> ChatRoomResponse:
    case_ref = room.case_ref if isinstance(room, CaseBoundChat) else None
    return ChatRoomResponse(
        room_key=room.room_key,
        kind=room.kind.value,
        status=room.status.value,
        participants=[
            ParticipantResponse(
                user_id=p.user_id,
                role=p.role,
                last_read_at=p.last_read_at.isoformat() if p.last_read_at else None,
            )
            for p in room.participants
        ],
        case_type=case_ref.case_type if case_ref else None,
        case_id=case_ref.case_id if case_ref else None,
        last_message=LastMessageResponse(
            sender_id=room.last_message.sender_id,
            content=room.last_message.content,
            timestamp=room.last_message.timestamp.isoformat(),
        ) if room.last_message else None,
        unread_count=unread_count,
        created_at=room.created_at.isoformat(),
    )


def message_to_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        room_key=message.room_key,
        sender_id=message.sender_id,
        content=message.content,
        message_type=message.message_type.value,
        timestamp=message.created_at.isoformat(),
    )


def page_to_response(page: MessagePage) -> MessagePageResponse:
    return MessagePageResponse(
        messages=[message_to_response(m) for m in page.messages],
        page=page.page,
        limit=page.limit,
        total=page.total,
        has_more=page.has_more,
    )
