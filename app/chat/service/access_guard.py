import logging

from app.chat.entity.chat import ChatRoom
from app.chat.errors import AccessDenied
from app.chat.service.service import IChatRepository
from pkg.log.logger import get_logger


class AccessGuard:
    """Decides chat membership against the durable room record.

    Nothing is cached: case-bound membership can change behind a live
    connection, so every call goes back to the store.
    """

    def __init__(self, chat_repo: IChatRepository, logger: logging.Logger | None = None):
        self.chat_repo = chat_repo
        self.logger = logger or get_logger(__name__)

    async def is_member(self, room_key: str, user_id: str) -> bool:
        if not room_key or not user_id:
            return False
        room = await self.chat_repo.find_room(room_key)
        # Clients may ask about direct rooms that have not been created yet
        if room is None:
            return False
        return room.is_participant(user_id)

    async def ensure_member(self, room_key: str, user_id: str,
                            message: str = "Access denied to chat room") -> ChatRoom:
        room = await self.chat_repo.find_room(room_key) if room_key else None
        if room is None or not room.is_participant(user_id):
            self.logger.warning(f"Access denied: user={user_id} room={room_key}")
            raise AccessDenied(message)
        return room
