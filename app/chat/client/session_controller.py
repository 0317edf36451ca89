"""Per-room client session: history, optimistic sends and live reconciliation."""
import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4
import logging

from app.auth.service.identity_service import Identity
from app.chat.client.transport import RECONNECTED, ChatTransport
from app.chat.entity.chat import utcnow
from app.realtime.protocol import ClientEvent, ServerEvent
from pkg.log.logger import get_logger

HistoryLoader = Callable[[str], Awaitable[List[Dict[str, Any]]]]


class SessionState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    CLOSED = "closed"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    RECEIVED = "received"
    UNCONFIRMED = "unconfirmed"


@dataclass
class LocalMessage:
    room_key: str
    content: str
    sender_id: str
    timestamp: str
    status: MessageStatus
    id: Optional[str] = None
    temp_id: Optional[str] = None
    sender_name: str = ""
    read: bool = False

    @classmethod
    def from_history(cls, row: Dict[str, Any], own_user_id: str) -> "LocalMessage":
        own = row["sender_id"] == own_user_id
        return cls(
            id=row["id"],
            room_key=row["room_key"],
            content=row["content"],
            sender_id=row["sender_id"],
            timestamp=row["timestamp"],
            status=MessageStatus.SENT if own else MessageStatus.RECEIVED,
        )

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "LocalMessage":
        sender = data.get("sender") or {}
        return cls(
            id=data.get("id"),
            temp_id=data.get("tempId"),
            room_key=data.get("roomKey", ""),
            content=data.get("content", ""),
            sender_id=sender.get("userId", ""),
            sender_name=sender.get("name", ""),
            timestamp=data.get("timestamp", ""),
            status=MessageStatus.RECEIVED,
        )


class ChatSessionController:
    """
    Drives one open chat room for one user.

    Sends are optimistic: the message is shown as ``sending`` right away and
    reconciled with the server echo (``new_message``) or acknowledgement
    (``message_sent``) by its temporary id. A send that is not confirmed within
    ``send_timeout`` seconds is marked ``unconfirmed`` but kept; a confirmation
    that arrives later still settles it.
    """

    def __init__(
        self,
        room_key: str,
        user: Identity,
        transport: ChatTransport,
        load_history: HistoryLoader,
        send_timeout: float = 5.0,
        on_error: Optional[Callable[[str], None]] = None,
        logger: logging.Logger | None = None,
    ):
        self.room_key = room_key
        self.user = user
        self.transport = transport
        self.load_history = load_history
        self.send_timeout = send_timeout
        self.on_error = on_error
        self.logger = logger or get_logger(__name__)

        self.state = SessionState.LOADING
        self.joined = False
        self.messages: List[LocalMessage] = []
        self.failures: List[str] = []
        self.notices: List[str] = []
        self.typing_users: Set[str] = set()

        self._in_flight: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._unsubscribe: List[Callable[[], None]] = []

    @property
    def is_sending(self) -> bool:
        return bool(self._in_flight)

    # ── lifecycle ───────────────────────────────────────────────

    async def open(self) -> None:
        if self._unsubscribe or self.state == SessionState.CLOSED:
            return

        handlers = {
            ServerEvent.NEW_MESSAGE.value: self._on_new_message,
            ServerEvent.MESSAGE_SENT.value: self._on_message_sent,
            ServerEvent.ERROR.value: self._on_error,
            ServerEvent.MESSAGES_READ.value: self._on_messages_read,
            ServerEvent.USER_TYPING.value: self._on_user_typing,
            ServerEvent.USER_STOP_TYPING.value: self._on_user_stop_typing,
            RECONNECTED: self._on_reconnect,
        }
        self._unsubscribe = [self.transport.on(event, handler) for event, handler in handlers.items()]

        if not self.transport.connected:
            await self.transport.connect()
        await self.transport.emit(ClientEvent.JOIN_CHAT.value, self.room_key)
        await self._refresh_history()
        if self.state == SessionState.CLOSED:
            # Closed while history was loading; undo the join
            await self._leave()
            return
        self.joined = True
        self.state = SessionState.READY
        self.logger.info(f"Session open for room={self.room_key} user_id={self.user.user_id}")

    async def close(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        if self.joined:
            await self._leave()
        self.joined = False

        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._in_flight.clear()
        self.typing_users.clear()

    async def _leave(self) -> None:
        if not self.transport.connected:
            return
        try:
            await self.transport.emit(ClientEvent.LEAVE_CHAT.value, self.room_key)
        except ConnectionError as e:
            self.logger.warning(f"Could not leave room {self.room_key}: {e}")

    # ── outbound ────────────────────────────────────────────────

    async def send(self, content: str) -> Optional[LocalMessage]:
        text = (content or "").strip()
        if self.state != SessionState.READY or not text:
            return None
        if not self.transport.connected:
            self._fail("Not connected to chat server")
            return None

        temp_id = f"temp_{uuid4().hex}"
        message = LocalMessage(
            temp_id=temp_id,
            room_key=self.room_key,
            content=text,
            sender_id=self.user.user_id,
            sender_name=self.user.display_name,
            timestamp=utcnow().isoformat(),
            status=MessageStatus.SENDING,
        )
        self.messages.append(message)
        self._in_flight.add(temp_id)
        self._timers[temp_id] = asyncio.get_running_loop().call_later(
            self.send_timeout, self._on_send_timeout, temp_id
        )

        try:
            await self.transport.emit(
                ClientEvent.SEND_MESSAGE.value,
                {"roomKey": self.room_key, "content": text, "tempId": temp_id},
            )
        except ConnectionError as e:
            self.logger.warning(f"Send failed for room={self.room_key}: {e}")
            self._drop(temp_id)
            self._fail("Failed to send message")
            return None
        return message

    async def start_typing(self) -> None:
        await self._emit_if_ready(ClientEvent.TYPING_START.value, {"roomKey": self.room_key})

    async def stop_typing(self) -> None:
        await self._emit_if_ready(ClientEvent.TYPING_STOP.value, {"roomKey": self.room_key})

    async def _emit_if_ready(self, event: str, data: Any) -> None:
        if self.state != SessionState.READY or not self.transport.connected:
            return
        try:
            await self.transport.emit(event, data)
        except ConnectionError as e:
            self.logger.debug(f"{event} not sent: {e}")

    # ── inbound ─────────────────────────────────────────────────

    async def _on_new_message(self, data: Dict[str, Any]) -> None:
        if self.state == SessionState.CLOSED or not isinstance(data, dict):
            return
        if data.get("roomKey") != self.room_key:
            return

        incoming = LocalMessage.from_wire(data)
        own = incoming.sender_id == self.user.user_id
        index = self._find(temp_id=incoming.temp_id, message_id=incoming.id)

        if index is not None:
            existing = self.messages[index]
            self.messages[index] = replace(
                incoming,
                temp_id=existing.temp_id or incoming.temp_id,
                status=MessageStatus.SENT if own else existing.status,
                read=existing.read,
            )
            if own and existing.temp_id:
                self._settle(existing.temp_id)
            return

        incoming.status = MessageStatus.SENT if own else MessageStatus.RECEIVED
        self.messages.append(incoming)
        if not own and incoming.id:
            await self._emit_if_ready(
                ClientEvent.MARK_MESSAGES_READ.value,
                {"roomKey": self.room_key, "messageIds": [incoming.id]},
            )

    async def _on_message_sent(self, data: Dict[str, Any]) -> None:
        if self.state == SessionState.CLOSED or not isinstance(data, dict):
            return
        temp_id = data.get("tempId")
        if not temp_id or data.get("roomKey", self.room_key) != self.room_key:
            return

        index = self._find(temp_id=temp_id)
        if index is None:
            return
        message = self.messages[index]
        message_id = data.get("messageId") or message.id
        duplicate = self._find(message_id=message_id)
        if duplicate is not None and duplicate != index:
            # The echo landed first under its server id; keep that one.
            self.messages.pop(index)
            self.messages[self._find(message_id=message_id)].status = MessageStatus.SENT
        else:
            message.id = message_id
            message.timestamp = data.get("timestamp") or message.timestamp
            message.status = MessageStatus.SENT
        self._settle(temp_id)

    async def _on_error(self, data: Dict[str, Any]) -> None:
        if self.state == SessionState.CLOSED:
            return
        if not isinstance(data, dict):
            data = {"message": str(data)}
        if data.get("roomKey") not in (None, self.room_key):
            return

        message = data.get("message") or "Unknown error"
        temp_id = data.get("tempId")

        if temp_id:
            index = self._find(temp_id=temp_id)
            if index is None or self.messages[index].status not in (MessageStatus.SENDING, MessageStatus.UNCONFIRMED):
                return
            self._drop(temp_id)
            self._fail(message)
            return

        if data.get("event") == ClientEvent.SEND_MESSAGE.value:
            pending = [m.temp_id for m in self.messages if m.status == MessageStatus.SENDING and m.temp_id]
            for pending_id in pending:
                self._drop(pending_id)
            self._fail(message)
            return

        self.logger.info(f"Chat notice for room={self.room_key}: {message}")
        self.notices.append(message)

    async def _on_messages_read(self, data: Dict[str, Any]) -> None:
        if self.state == SessionState.CLOSED or not isinstance(data, dict):
            return
        if data.get("roomKey") != self.room_key or data.get("readBy") == self.user.user_id:
            return
        read_ids = data.get("messageIds")
        for message in self.messages:
            if message.sender_id != self.user.user_id or message.id is None:
                continue
            if read_ids is None or message.id in read_ids:
                message.read = True

    async def _on_user_typing(self, data: Dict[str, Any]) -> None:
        if self.state != SessionState.CLOSED and isinstance(data, dict) and data.get("roomKey") == self.room_key:
            self.typing_users.add(data.get("userId", ""))

    async def _on_user_stop_typing(self, data: Dict[str, Any]) -> None:
        if self.state != SessionState.CLOSED and isinstance(data, dict) and data.get("roomKey") == self.room_key:
            self.typing_users.discard(data.get("userId", ""))

    async def _on_reconnect(self, _data: Any) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.logger.info(f"Rejoining room={self.room_key} after reconnect")
        try:
            await self.transport.emit(ClientEvent.JOIN_CHAT.value, self.room_key)
        except ConnectionError as e:
            self.logger.warning(f"Rejoin failed for room={self.room_key}: {e}")
            return
        await self._refresh_history()
        self.joined = True

    # ── helpers ─────────────────────────────────────────────────

    async def _refresh_history(self) -> None:
        try:
            rows = await self.load_history(self.room_key)
        except Exception as e:
            self.logger.error(f"Failed to load history for room={self.room_key}: {e}", exc_info=True)
            self.notices.append("Failed to load messages")
            return
        if self.state == SessionState.CLOSED:
            return

        history = [LocalMessage.from_history(row, self.user.user_id) for row in rows]
        by_id = {m.id: m for m in history}
        overlaps = any(m.id in by_id for m in self.messages if m.id is not None)
        oldest = history[0].timestamp if history else None

        # History is only the newest page: stored messages it no longer covers
        # stay ahead of it, and unsaved sends stay at the end.
        older: List[LocalMessage] = []
        newer: List[LocalMessage] = []
        pending: List[LocalMessage] = []
        seen_overlap = False
        for message in self.messages:
            if message.id is None:
                pending.append(message)
                continue
            target = by_id.get(message.id)
            if target is not None:
                seen_overlap = True
                # Keep the local correlation id so late acknowledgements still match.
                target.temp_id = message.temp_id
                target.read = target.read or message.read
                if message.temp_id:
                    self._settle(message.temp_id)
                continue
            if overlaps:
                (newer if seen_overlap else older).append(message)
            elif oldest is None or message.timestamp <= oldest:
                older.append(message)
            else:
                newer.append(message)
        self.messages = older + history + newer + pending

    def _find(self, temp_id: Optional[str] = None, message_id: Optional[str] = None) -> Optional[int]:
        if temp_id:
            for index, message in enumerate(self.messages):
                if message.temp_id == temp_id:
                    return index
        if message_id:
            for index, message in enumerate(self.messages):
                if message.id == message_id:
                    return index
        return None

    def _settle(self, temp_id: str) -> None:
        self._in_flight.discard(temp_id)
        handle = self._timers.pop(temp_id, None)
        if handle is not None:
            handle.cancel()

    def _drop(self, temp_id: str) -> None:
        self._settle(temp_id)
        self.messages = [m for m in self.messages if m.temp_id != temp_id]

    def _fail(self, message: str) -> None:
        self.failures.append(message)
        if self.on_error is not None:
            self.on_error(message)

    def _on_send_timeout(self, temp_id: str) -> None:
        self._timers.pop(temp_id, None)
        self._in_flight.discard(temp_id)
        index = self._find(temp_id=temp_id)
        if index is not None and self.messages[index].status == MessageStatus.SENDING:
            self.messages[index].status = MessageStatus.UNCONFIRMED
            self.logger.warning(f"Message {temp_id} unconfirmed after {self.send_timeout}s")
