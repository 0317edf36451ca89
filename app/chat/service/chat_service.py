"""
Room lifecycle used by the CRUD layer.

Direct chats are created ``pending`` when a citizen reaches out to a lawyer and
become ``active`` once the lawyer accepts. Case-bound chats are created
``active`` when a case is assigned. Creation is idempotent in both cases.
"""

from typing import Any, Dict, List, Optional
import logging

from app.auth.service.identity_service import Identity
from app.chat.entity.chat import (
    CaseBoundChat, CaseRef, ChatRoom, ChatStatus, ChatSummary, DirectChat, MessagePage,
    Participant, case_room_key, direct_room_key, utcnow,
)
from app.chat.errors import AccessDenied, ChatNotFound, ValidationError
from app.chat.service.service import IChatRepository, INotifier
from pkg.log.logger import get_logger

DEFAULT_REQUEST_MESSAGE = "Hi, I would like to connect with you for legal assistance."


class ChatService:

    def __init__(
        self,
        chat_repo: IChatRepository,
        notifier: Optional[INotifier] = None,
        logger: logging.Logger | None = None,
        history_page_size: int = 50,
        max_message_length: int = 1000,
    ):
        self.chat_repo = chat_repo
        self.notifier = notifier
        self.logger = logger or get_logger(__name__)
        self.history_page_size = history_page_size
        self.max_message_length = max_message_length

    async def _notify(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        delivered = await self.notifier.notify_user(user_id, event, data)
        self.logger.debug(f"Notified user={user_id} event={event} connections={delivered}")

    # ────────────────────────────────────────────────
    # Direct chats
    # ────────────────────────────────────────────────

    async def request_direct_chat(self, requester: Identity, target_id: str,
                                  message: Optional[str] = None,
                                  target_role: str = "lawyer") -> ChatRoom:
        """Create (or return) the pending direct chat between requester and target."""
        if str(target_id) == requester.user_id:
            raise ValidationError("Cannot start a chat with yourself")

        opening = (message or "").strip() or DEFAULT_REQUEST_MESSAGE
        if len(opening) > self.max_message_length:
            raise ValidationError(f"Message too long. Maximum {self.max_message_length} characters.")

        room_key = direct_room_key(requester.user_id, target_id)
        existing = await self.chat_repo.find_room(room_key)
        if existing is not None:
            return existing

        room, created = await self.chat_repo.create_room(DirectChat(
            room_key=room_key,
            participants=[
                Participant(user_id=requester.user_id, role=requester.role),
                Participant(user_id=str(target_id), role=target_role),
            ],
            status=ChatStatus.PENDING,
        ))
        if not created:
            return room
        await self.chat_repo.append_message(room_key, requester.user_id, opening)

        await self._notify(str(target_id), "direct_message_request", {
            "roomKey": room_key,
            "message": opening,
            "from": {"userId": requester.user_id, "name": requester.display_name, "role": requester.role},
            "timestamp": utcnow().isoformat(),
        })
        self.logger.info(f"Direct chat requested: {room_key}")
        return await self.chat_repo.find_room(room_key) or room

    async def accept_direct_chat(self, room_key: str, user: Identity) -> ChatRoom:
        """The invited participant moves a pending direct chat to active."""
        room = await self.chat_repo.find_room(room_key)
        if room is None or not isinstance(room, DirectChat):
            raise ChatNotFound("Chat request not found")
        if not room.is_participant(user.user_id):
            raise AccessDenied("Access denied to chat room")
        if room.requester_id == user.user_id:
            raise AccessDenied("Only the invited participant can accept this request")
        if room.status == ChatStatus.ACTIVE:
            return room

        updated = await self.chat_repo.update_status(room_key, ChatStatus.ACTIVE) or room
        await self._notify(room.requester_id, "direct_request_accepted", {
            "roomKey": room_key,
            "lawyer": {"userId": user.user_id, "name": user.display_name, "role": user.role},
            "timestamp": utcnow().isoformat(),
        })
        self.logger.info(f"Direct chat accepted: {room_key}")
        return updated

    # ────────────────────────────────────────────────
    # Case-bound chats
    # ────────────────────────────────────────────────

    async def open_case_chat(self, case_type: str, case_id: str, citizen_id: str, lawyer_id: str,
                             case_data: Optional[Dict[str, Any]] = None) -> ChatRoom:
        """Create (or return) the chat for an assigned case and notify both parties."""
        room = await self.chat_repo.find_case_room(case_type, case_id)
        created = False
        if room is None:
            room, created = await self.chat_repo.create_room(CaseBoundChat(
                room_key=case_room_key(case_type, case_id),
                participants=[
                    Participant(user_id=str(citizen_id), role="citizen"),
                    Participant(user_id=str(lawyer_id), role="lawyer"),
                ],
                status=ChatStatus.ACTIVE,
                case_ref=CaseRef(case_type=case_type, case_id=case_id),
            ))
            if created:
                self.logger.info(f"Case chat created: {room.room_key} for case {case_type}/{case_id}")

        assignment = {**(case_data or {}), "roomKey": room.room_key, "chatCreated": created}
        await self._notify(str(citizen_id), "case_assignment_update", assignment)
        await self._notify(str(lawyer_id), "new_case_assigned", assignment)
        return room

    # ────────────────────────────────────────────────
    # Reads for list / detail views
    # ────────────────────────────────────────────────

    async def list_chats(self, user_id: str) -> List[ChatSummary]:
        rooms = await self.chat_repo.list_rooms_for_user(user_id)
        return [
            ChatSummary(room=room, unread_count=await self.chat_repo.count_unread(room.room_key, user_id))
            for room in rooms
        ]

    async def get_chat(self, room_key: str, user_id: str) -> ChatRoom:
        room = await self.chat_repo.find_room(room_key)
        if room is None:
            raise ChatNotFound()
        if not room.is_participant(user_id):
            raise AccessDenied("Access denied to chat room")
        return room

    async def get_case_chat(self, case_type: str, case_id: str, user_id: str) -> ChatRoom:
        room = await self.chat_repo.find_case_room(case_type, case_id)
        if room is None:
            raise ChatNotFound("No chat exists for this case yet")
        if not room.is_participant(user_id):
            raise AccessDenied("Access denied to chat room")
        return room

    async def get_history(self, room_key: str, user_id: str, page: int = 1,
                          limit: Optional[int] = None) -> MessagePage:
        await self.get_chat(room_key, user_id)
        return await self.chat_repo.list_messages(room_key, page=page, limit=limit or self.history_page_size)
