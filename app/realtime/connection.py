"""Process-local registry of live connections and room broadcast groups.

Entries are created on connect/join and removed on leave/disconnect. The
registry is never consulted for authorization.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set
import logging
import uuid

from app.auth.service.identity_service import Identity
from app.realtime.protocol import WsOutbound
from pkg.log.logger import get_logger

_logger = get_logger(__name__)

SendFn = Callable[[dict], Awaitable[None]]


class ClientConnection:
    """One authenticated socket. Outbound frames are written one at a time."""

    def __init__(self, identity: Identity, send: SendFn, connection_id: Optional[str] = None,
                 logger: logging.Logger | None = None):
        self.id = connection_id or uuid.uuid4().hex
        self.identity = identity
        self.rooms: Set[str] = set()
        self._send = send
        self._send_lock = asyncio.Lock()
        self.logger = logger or _logger

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def personal_channel(self) -> str:
        return f"user_{self.identity.user_id}"

    async def send(self, event: str, data: dict) -> bool:
        frame = WsOutbound(event=event, data=data).model_dump(mode="json")
        try:
            async with self._send_lock:
                await self._send(frame)
            return True
        except Exception as e:
            # A dead socket must not break fan-out to the rest of the room
            self.logger.warning(f"Failed to deliver {event} to connection={self.id} user={self.user_id}: {e}")
            return False

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id!r}, user_id={self.user_id!r})"


class ConnectionRegistry:
    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def add(self, connection: ClientConnection) -> None:
        self._connections[connection.id] = connection
        self._by_user.setdefault(connection.user_id, set()).add(connection.id)

    def remove(self, connection: ClientConnection) -> Set[str]:
        """Drop the connection everywhere; returns the rooms it had joined."""
        rooms = set(connection.rooms)
        for room_key in rooms:
            self.leave(connection, room_key)
        self._connections.pop(connection.id, None)
        user_connections = self._by_user.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection.id)
            if not user_connections:
                del self._by_user[connection.user_id]
        return rooms

    def join(self, connection: ClientConnection, room_key: str) -> None:
        self._rooms.setdefault(room_key, set()).add(connection.id)
        connection.rooms.add(room_key)

    def leave(self, connection: ClientConnection, room_key: str) -> bool:
        members = self._rooms.get(room_key)
        connection.rooms.discard(room_key)
        if members is None or connection.id not in members:
            return False
        members.discard(connection.id)
        if not members:
            del self._rooms[room_key]
        return True

    def is_joined(self, connection: ClientConnection, room_key: str) -> bool:
        return connection.id in self._rooms.get(room_key, ())

    def room_members(self, room_key: str) -> List[ClientConnection]:
        return [self._connections[cid] for cid in self._rooms.get(room_key, ()) if cid in self._connections]

    def user_connections(self, user_id: str) -> List[ClientConnection]:
        return [self._connections[cid] for cid in self._by_user.get(str(user_id), ()) if cid in self._connections]

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(str(user_id)))

    def all(self) -> List[ClientConnection]:
        return list(self._connections.values())

    def active_rooms(self) -> List[str]:
        return list(self._rooms)

    def __len__(self) -> int:
        return len(self._connections)
