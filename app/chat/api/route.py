from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional

from app.auth.api.dependencies import get_current_user
from app.auth.api.dto import BaseResponse
from app.auth.service.identity_service import Identity
from app.chat.api.dto import CaseChatRequestDTO, DirectChatRequestDTO
from app.chat.api.handler import page_to_response, room_to_response, to_http_exception
from app.chat.errors import ChatError
from app.chat.service.chat_service import ChatService
from app.core.logger import get_logger

chat_router = APIRouter(prefix="/chats", tags=["Chat"])
logger = get_logger("ChatRouter")


def get_chat_service(request: Request) -> Optional[ChatService]:
    """Dependency to get chat service from app.state."""
    return getattr(request.app.state, "chat_service", None)


def _require(chat_service: Optional[ChatService]) -> ChatService:
    if not chat_service:
        raise HTTPException(status_code=503, detail="Chat service not available")
    return chat_service


@chat_router.get("", response_model=BaseResponse)
async def list_chats(
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    """All chats of the authenticated user, most recent activity first, with unread counts."""
    service = _require(chat_service)
    try:
        summaries = await service.list_chats(current_user.user_id)
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(
        status=True,
        message="Chats fetched successfully",
        data={"chats": [room_to_response(s.room, s.unread_count).model_dump() for s in summaries]},
    )


@chat_router.post("/direct/{user_id}", response_model=BaseResponse)
async def create_direct_chat(
    user_id: str,
    body: Optional[DirectChatRequestDTO] = None,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    """Create or get the direct chat with another user. New chats start pending."""
    service = _require(chat_service)
    try:
        room = await service.request_direct_chat(current_user, user_id, body.message if body else None)
    except ChatError as e:
        raise to_http_exception(e)

    logger.info(f"Direct chat {room.room_key} requested by user_id={current_user.user_id}")
    return BaseResponse(
        status=True,
        message="Message request sent successfully",
        data={"chat": room_to_response(room).model_dump()},
    )


@chat_router.post("/case", response_model=BaseResponse)
async def open_case_chat(
    body: CaseChatRequestDTO,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    """Open the chat for an assigned case. Called when a lawyer is assigned to a case."""
    service = _require(chat_service)
    if current_user.user_id not in (body.citizen_id, body.lawyer_id):
        raise HTTPException(status_code=403, detail="Only the case parties can open its chat")
    try:
        room = await service.open_case_chat(
            body.case_type, body.case_id, body.citizen_id, body.lawyer_id, body.case_data
        )
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(
        status=True,
        message="Case chat ready",
        data={"chat": room_to_response(room).model_dump()},
    )


@chat_router.get("/case/{case_type}/{case_id}", response_model=BaseResponse)
async def get_case_chat(
    case_type: str,
    case_id: str,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    service = _require(chat_service)
    try:
        room = await service.get_case_chat(case_type, case_id, current_user.user_id)
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(status=True, message="Chat fetched successfully", data={"chat": room_to_response(room).model_dump()})


@chat_router.get("/case/{case_type}/{case_id}/messages", response_model=BaseResponse)
async def get_case_chat_messages(
    case_type: str,
    case_id: str,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
):
    service = _require(chat_service)
    try:
        room = await service.get_case_chat(case_type, case_id, current_user.user_id)
        history = await service.get_history(room.room_key, current_user.user_id, page=page, limit=limit)
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(status=True, message="Messages fetched successfully", data=page_to_response(history).model_dump())


@chat_router.post("/{room_key}/accept", response_model=BaseResponse)
async def accept_direct_chat(
    room_key: str,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    """Accept a pending direct message request."""
    service = _require(chat_service)
    try:
        room = await service.accept_direct_chat(room_key, current_user)
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(
        status=True,
        message="Direct message request accepted successfully",
        data={"chat": room_to_response(room).model_dump()},
    )


@chat_router.get("/{room_key}", response_model=BaseResponse)
async def get_chat(
    room_key: str,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
):
    service = _require(chat_service)
    try:
        room = await service.get_chat(room_key, current_user.user_id)
    except ChatError as e:
        raise to_http_exception(e)

    return BaseResponse(status=True, message="Chat fetched successfully", data={"chat": room_to_response(room).model_dump()})


@chat_router.get("/{room_key}/messages", response_model=BaseResponse)
async def get_chat_messages(
    room_key: str,
    current_user: Identity = Depends(get_current_user),
    chat_service: Optional[ChatService] = Depends(get_chat_service),
    page: int = Query(default=1, ge=1, description="1 is the newest page"),
    limit: int = Query(default=50, ge=1, le=100, description="Messages per page"),
):
    """
    Paginated history. Page 1 holds the newest messages; each page is ordered
    oldest to newest so it can be prepended as the user scrolls up.
    """
    service = _require(chat_service)
    try:
        history = await service.get_history(room_key, current_user.user_id, page=page, limit=limit)
    except ChatError as e:
        raise to_http_exception(e)

    logger.info(f"Retrieved {len(history.messages)} messages for room={room_key} page={page}")
    return BaseResponse(status=True, message="Messages fetched successfully", data=page_to_response(history).model_dump())
