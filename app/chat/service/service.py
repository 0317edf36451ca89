from abc import ABC, abstractmethod
from typing import Optional, List, Tuple

from app.chat.entity.chat import (
    ChatRoom, ChatStatus, Message, MessagePage, MessageType, ReadCursor,
)


class IChatRepository(ABC):
    """Chat store consumed by the gateway and the chat service.

    Implementations raise ``PersistenceError`` when the backing store fails.
    """

    @abstractmethod
    async def find_room(self, room_key: str) -> Optional[ChatRoom]:
        pass

    @abstractmethod
    async def find_case_room(self, case_type: str, case_id: str) -> Optional[ChatRoom]:
        pass

    @abstractmethod
    async def create_room(self, room: ChatRoom) -> Tuple[ChatRoom, bool]:
        """Persist ``room`` and return ``(room, True)``.

        If the key (or case ref) already exists, return ``(stored_room, False)`` unchanged.
        """
        pass

    @abstractmethod
    async def update_status(self, room_key: str, status: ChatStatus) -> Optional[ChatRoom]:
        pass

    @abstractmethod
    async def append_message(self, room_key: str, sender_id: str, content: str,
                             message_type: MessageType = MessageType.TEXT) -> Message:
        pass

    @abstractmethod
    async def list_messages(self, room_key: str, page: int = 1, limit: int = 50) -> MessagePage:
        """Page 1 holds the newest ``limit`` messages, returned oldest first."""
        pass

    @abstractmethod
    async def set_read_cursor(self, room_key: str, user_id: str,
                              message_ids: Optional[List[str]] = None) -> Optional[ReadCursor]:
        """Advance the user's cursor to the newest of ``message_ids`` (or the newest message).

        The cursor never moves backwards. Returns None when nothing could be read.
        """
        pass

    @abstractmethod
    async def count_unread(self, room_key: str, user_id: str) -> int:
        pass

    @abstractmethod
    async def list_rooms_for_user(self, user_id: str) -> List[ChatRoom]:
        """Rooms the user participates in, most recent activity first."""
        pass


class INotifier(ABC):
    """Pushes out-of-band events to a user's personal channel."""

    @abstractmethod
    async def notify_user(self, user_id: str, event: str, data: dict) -> int:
        """Returns the number of live connections the event reached."""
        pass
