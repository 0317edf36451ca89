import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest

from app.auth.service.identity_service import Identity, IdentityService
from app.chat.client.transport import ChatTransport
from app.chat.entity.chat import (
    CaseBoundChat, CaseRef, ChatRoom, ChatStatus, DirectChat, LastMessage, Message, MessagePage,
    MessageType, Participant, ReadCursor, direct_room_key, utcnow,
)
from app.chat.errors import ChatNotFound, PersistenceError
from app.chat.service.rate_limiter import SlidingWindowRateLimiter
from app.chat.service.service import IChatRepository, INotifier
from app.realtime.connection import ClientConnection
from app.realtime.gateway import RealtimeGateway
from pkg.auth_token_client.client import TokenClient, TokenPayload

JWT_SECRET = "test-secret"
JWT_REFRESH_SECRET = "test-refresh-secret"

CITIZEN = Identity(user_id="citizen-1", role="citizen", display_name="Asha")
LAWYER = Identity(user_id="lawyer-1", role="lawyer", display_name="Adv. Rao")
OUTSIDER = Identity(user_id="citizen-2", role="citizen", display_name="Ravi")


class InMemoryChatRepository(IChatRepository):
    """Chat store kept in dicts. Returns copies so callers cannot mutate state."""

    def __init__(self):
        self.rooms: Dict[str, ChatRoom] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.activity: Dict[str, Any] = {}
        self.fail_appends = False
        self._seq = 0

    async def find_room(self, room_key: str) -> Optional[ChatRoom]:
        room = self.rooms.get(room_key)
        return room.model_copy(deep=True) if room else None

    async def find_case_room(self, case_type: str, case_id: str) -> Optional[ChatRoom]:
        for room in self.rooms.values():
            if isinstance(room, CaseBoundChat) and room.case_ref == CaseRef(case_type=case_type, case_id=case_id):
                return room.model_copy(deep=True)
        return None

    async def create_room(self, room: ChatRoom) -> Tuple[ChatRoom, bool]:
        if isinstance(room, CaseBoundChat):
            same_case = await self.find_case_room(room.case_ref.case_type, room.case_ref.case_id)
            if same_case is not None:
                return same_case, False
        created = room.room_key not in self.rooms
        if created:
            self.rooms[room.room_key] = room.model_copy(deep=True)
            self.messages[room.room_key] = []
            self.activity[room.room_key] = room.created_at
        return await self.find_room(room.room_key), created

    async def update_status(self, room_key: str, status: ChatStatus) -> Optional[ChatRoom]:
        room = self.rooms.get(room_key)
        if room is None:
            return None
        room.status = status
        return await self.find_room(room_key)

    async def append_message(self, room_key: str, sender_id: str, content: str,
                             message_type: MessageType = MessageType.TEXT) -> Message:
        if self.fail_appends:
            raise PersistenceError("Failed to save message")
        room = self.rooms.get(room_key)
        if room is None:
            raise ChatNotFound()
        self._seq += 1
        message = Message(
            id=str(uuid.uuid4()),
            seq=self._seq,
            room_key=room_key,
            sender_id=str(sender_id),
            content=content,
            message_type=message_type,
            created_at=utcnow(),
        )
        self.messages[room_key].append(message)
        room.last_message = LastMessage(sender_id=message.sender_id, content=content, timestamp=message.created_at)
        self.activity[room_key] = message.created_at
        return message

    async def list_messages(self, room_key: str, page: int = 1, limit: int = 50) -> MessagePage:
        history = self.messages.get(room_key, [])
        end = len(history) - (page - 1) * limit
        start = max(end - limit, 0)
        return MessagePage(
            messages=list(history[start:max(end, 0)]),
            page=page,
            limit=limit,
            total=len(history),
        )

    async def set_read_cursor(self, room_key: str, user_id: str,
                              message_ids: Optional[List[str]] = None) -> Optional[ReadCursor]:
        room = self.rooms.get(room_key)
        participant = room.participant(user_id) if room else None
        if participant is None:
            return None
        candidates = [m for m in self.messages[room_key] if not message_ids or m.id in message_ids]
        if not candidates:
            return None
        target = max(m.seq for m in candidates)
        if target > participant.last_read_seq:
            participant.last_read_seq = target
            participant.last_read_at = utcnow()
        return ReadCursor(
            room_key=room_key,
            user_id=user_id,
            last_read_seq=participant.last_read_seq,
            last_read_at=participant.last_read_at or utcnow(),
        )

    async def count_unread(self, room_key: str, user_id: str) -> int:
        room = self.rooms.get(room_key)
        participant = room.participant(user_id) if room else None
        if participant is None:
            return 0
        return sum(
            1 for m in self.messages[room_key]
            if m.seq > participant.last_read_seq and m.sender_id != user_id
        )

    async def list_rooms_for_user(self, user_id: str) -> List[ChatRoom]:
        rooms = [r for r in self.rooms.values() if r.is_participant(user_id)]
        rooms.sort(key=lambda r: self.activity[r.room_key], reverse=True)
        return [r.model_copy(deep=True) for r in rooms]


class RecordingNotifier(INotifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify_user(self, user_id: str, event: str, data: dict) -> int:
        self.sent.append((user_id, event, data))
        return 1

    def events_for(self, user_id: str) -> List[str]:
        return [event for uid, event, _ in self.sent if uid == user_id]


class Recorder:
    """Stands in for ``websocket.send_json`` and keeps every frame."""

    def __init__(self, fail: bool = False):
        self.frames: List[dict] = []
        self.fail = fail

    async def __call__(self, frame: dict) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.frames.append(frame)

    def names(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def data(self, event: str) -> List[dict]:
        return [f["data"] for f in self.frames if f["event"] == event]

    def clear(self) -> None:
        self.frames.clear()


class FakeTransport(ChatTransport):
    def __init__(self, connected: bool = True):
        super().__init__()
        self._connected = connected
        self.emitted: List[tuple] = []
        self.connect_calls = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        self._connected = True

    async def emit(self, event: str, data: Any) -> None:
        if not self._connected:
            raise ConnectionError("not connected")
        self.emitted.append((event, data))

    async def close(self) -> None:
        self._connected = False

    async def deliver(self, event: str, data: Any) -> None:
        await self._fire(event, data)

    def emitted_events(self, event: str) -> List[Any]:
        return [data for name, data in self.emitted if name == event]


class FakeHistory:
    def __init__(self, rows: Optional[List[dict]] = None):
        self.rows = list(rows or [])
        self.calls = 0

    async def __call__(self, room_key: str) -> List[dict]:
        self.calls += 1
        return list(self.rows)


def history_row(message_id: str, sender_id: str, content: str, room_key: str = "room-1") -> dict:
    return {
        "id": message_id,
        "room_key": room_key,
        "sender_id": sender_id,
        "content": content,
        "message_type": "text",
        "timestamp": utcnow().isoformat(),
    }


def make_token(identity: Identity, secret: str = JWT_SECRET) -> str:
    client = TokenClient(secret, JWT_REFRESH_SECRET)
    tokens = client.create_tokens(TokenPayload(
        user_id=identity.user_id, role=identity.role, name=identity.display_name,
    ))
    return tokens["access_token"]


async def seed_direct_room(repo: InMemoryChatRepository, a: Identity = CITIZEN, b: Identity = LAWYER,
                           status: ChatStatus = ChatStatus.ACTIVE) -> str:
    room_key = direct_room_key(a.user_id, b.user_id)
    await repo.create_room(DirectChat(
        room_key=room_key,
        participants=[Participant(user_id=a.user_id, role=a.role), Participant(user_id=b.user_id, role=b.role)],
        status=status,
    ))
    return room_key


async def open_connection(gateway: RealtimeGateway, identity: Identity, fail: bool = False):
    recorder = Recorder(fail=fail)
    connection = ClientConnection(identity, recorder)
    await gateway.connect(connection)
    return connection, recorder


@pytest.fixture
def repo() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture
def identity_service() -> IdentityService:
    return IdentityService(TokenClient(JWT_SECRET, JWT_REFRESH_SECRET))


@pytest.fixture
def limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_events=30, window_seconds=60)


@pytest.fixture
def gateway(repo, identity_service, limiter) -> RealtimeGateway:
    return RealtimeGateway(repo, identity_service, limiter, max_message_length=1000)
