"""
Realtime chat gateway.

Every inbound event goes through one table that maps the event name to a
payload parser and a handler. Handlers validate, consult the access guard and
rate limiter, touch the store, and return a ``Reaction``: the room-group change
to apply plus the outbound events to deliver. The dispatcher applies reactions
and turns ``ChatError`` into an ``error`` event for the initiating connection
only, so a bad event never closes the socket.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

from pydantic import ValidationError as PayloadError

from app.auth.service.identity_service import Identity, IdentityService
from app.chat.entity.chat import MessageType
from app.chat.errors import AccessDenied, ChatError, PersistenceError, RateLimited, ValidationError
from app.chat.service.access_guard import AccessGuard
from app.chat.service.rate_limiter import IRateLimiter
from app.chat.service.service import IChatRepository, INotifier
from app.realtime.connection import ClientConnection, ConnectionRegistry
from app.realtime.protocol import (
    ClientEvent, ErrorData, MarkReadPayload, MessageSentData, NewMessageData, RoomPayload,
    SendMessagePayload, SenderSummary, ServerEvent, StatusPayload, WsInbound,
    parse_room_payload, parse_status_payload,
)
from pkg.log.logger import get_logger


class Target(str, Enum):
    SELF = "self"
    ROOM = "room"                # every joined connection, plus the initiator
    ROOM_OTHERS = "room_others"  # every joined connection except the initiator
    OTHERS = "others"            # every other live connection


@dataclass
class Outbound:
    event: ServerEvent
    data: dict
    target: Target = Target.SELF
    room_key: Optional[str] = None


@dataclass
class Reaction:
    outbound: List[Outbound] = field(default_factory=list)
    join: Optional[str] = None
    leave: Optional[str] = None


Handler = Callable[[ClientConnection, Any], Awaitable[Reaction]]

FAILURE_MESSAGES = {
    ClientEvent.JOIN_CHAT: "Failed to join chat",
    ClientEvent.SEND_MESSAGE: "Failed to send message",
}

# Failures on these are logged, never reported back
SILENT_EVENTS = {
    ClientEvent.TYPING_START,
    ClientEvent.TYPING_STOP,
    ClientEvent.MARK_MESSAGES_READ,
    ClientEvent.UPDATE_STATUS,
}


class RealtimeGateway(INotifier):

    def __init__(
        self,
        chat_repo: IChatRepository,
        identity_service: IdentityService,
        rate_limiter: IRateLimiter,
        max_message_length: int = 1000,
        logger: logging.Logger | None = None,
    ):
        self.chat_repo = chat_repo
        self.identity_service = identity_service
        self.rate_limiter = rate_limiter
        self.max_message_length = max_message_length
        self.logger = logger or get_logger(__name__)
        self.guard = AccessGuard(chat_repo, self.logger)
        self.registry = ConnectionRegistry()

        self._handlers: Dict[ClientEvent, Tuple[Callable[[Any], Any], Handler]] = {
            ClientEvent.JOIN_CHAT: (parse_room_payload, self._on_join_chat),
            ClientEvent.LEAVE_CHAT: (parse_room_payload, self._on_leave_chat),
            ClientEvent.SEND_MESSAGE: (SendMessagePayload.model_validate, self._on_send_message),
            ClientEvent.TYPING_START: (parse_room_payload, self._on_typing_start),
            ClientEvent.TYPING_STOP: (parse_room_payload, self._on_typing_stop),
            ClientEvent.MARK_MESSAGES_READ: (MarkReadPayload.model_validate, self._on_mark_read),
            ClientEvent.UPDATE_STATUS: (parse_status_payload, self._on_update_status),
        }

    # ────────────────────────────────────────────────
    # Connection lifecycle
    # ────────────────────────────────────────────────

    async def authenticate(self, token: Optional[str]) -> Identity:
        """Raises AuthenticationError; the caller must close the socket."""
        return await self.identity_service.resolve_token(token)

    async def connect(self, connection: ClientConnection) -> None:
        self.registry.add(connection)
        self.logger.info(
            f"User connected: {connection.identity.display_name or connection.user_id} "
            f"({connection.id}) channel={connection.personal_channel}"
        )

    async def disconnect(self, connection: ClientConnection, reason: str = "") -> None:
        rooms = self.registry.remove(connection)
        self.logger.info(f"User disconnected: {connection.user_id} ({connection.id}) rooms={sorted(rooms)} {reason}".rstrip())
        if not self.registry.is_online(connection.user_id):
            await self._deliver(
                self.registry.all(),
                ServerEvent.USER_STATUS_UPDATE,
                {"userId": connection.user_id, "status": "offline"},
            )

    async def notify_user(self, user_id: str, event: str, data: dict) -> int:
        return await self._deliver(self.registry.user_connections(user_id), event, data)

    # ────────────────────────────────────────────────
    # Dispatch
    # ────────────────────────────────────────────────

    async def dispatch(self, connection: ClientConnection, raw: Union[str, bytes]) -> None:
        """Handle one raw frame from the socket; bytes must be UTF-8 JSON."""
        try:
            frame = WsInbound.model_validate_json(raw)
        except PayloadError:
            await self._send_error(connection, ErrorData(message="Malformed event", code=ValidationError.code))
            return
        await self.handle_event(connection, frame.event, frame.data)

    async def handle_event(self, connection: ClientConnection, event: str, data: Any) -> None:
        try:
            client_event = ClientEvent(event)
        except ValueError:
            await self._send_error(connection, ErrorData(message="Unsupported event", code=ValidationError.code, event=event))
            return

        parse, handler = self._handlers[client_event]
        payload = None
        try:
            payload = parse(data)
            reaction = await handler(connection, payload)
        except PayloadError as e:
            self._log_rejection(connection, client_event, f"invalid payload: {e.error_count()} error(s)")
            if client_event not in SILENT_EVENTS:
                await self._send_error(connection, ErrorData(
                    message=f"Invalid payload for {client_event.value}",
                    code=ValidationError.code,
                    event=client_event.value,
                ))
            return
        except ChatError as e:
            self._log_rejection(connection, client_event, f"{e.code}: {e.message}")
            if client_event not in SILENT_EVENTS:
                message = e.message
                if isinstance(e, PersistenceError):
                    message = FAILURE_MESSAGES.get(client_event, e.message)
                await self._send_error(connection, self._error_for(client_event, payload, message, e.code))
            return
        except Exception as e:
            self.logger.error(f"Unhandled error in {client_event.value} for user={connection.user_id}: {e}", exc_info=True)
            if client_event not in SILENT_EVENTS:
                message = FAILURE_MESSAGES.get(client_event, "Failed to process event")
                await self._send_error(connection, self._error_for(client_event, payload, message, ChatError.code))
            return

        await self._apply(connection, reaction)

    def _log_rejection(self, connection: ClientConnection, event: ClientEvent, detail: str) -> None:
        self.logger.warning(f"Rejected {event.value} from user={connection.user_id}: {detail}")

    @staticmethod
    def _error_for(event: ClientEvent, payload: Any, message: str, code: str) -> ErrorData:
        return ErrorData(
            message=message,
            code=code,
            event=event.value,
            room_key=getattr(payload, "room_key", None),
            temp_id=getattr(payload, "temp_id", None),
        )

    async def _send_error(self, connection: ClientConnection, error: ErrorData) -> None:
        await connection.send(ServerEvent.ERROR.value, error.to_wire())

    async def _apply(self, connection: ClientConnection, reaction: Reaction) -> None:
        if reaction.join:
            self.registry.join(connection, reaction.join)
        if reaction.leave:
            self.registry.leave(connection, reaction.leave)

        for out in reaction.outbound:
            await self._deliver(self._resolve(connection, out), out.event, out.data)

    def _resolve(self, connection: ClientConnection, out: Outbound) -> List[ClientConnection]:
        # Resolved at delivery time, after any awaited store call
        if out.target == Target.SELF:
            return [connection]
        if out.target == Target.OTHERS:
            return [c for c in self.registry.all() if c.id != connection.id]

        members = self.registry.room_members(out.room_key)
        if out.target == Target.ROOM_OTHERS:
            return [c for c in members if c.id != connection.id]
        if all(c.id != connection.id for c in members):
            members.append(connection)
        return members

    async def _deliver(self, connections: Iterable[ClientConnection], event: Any, data: dict) -> int:
        name = event.value if isinstance(event, Enum) else str(event)
        results = await asyncio.gather(*(c.send(name, data) for c in connections))
        return sum(1 for ok in results if ok)

    # ────────────────────────────────────────────────
    # Handlers
    # ────────────────────────────────────────────────

    async def _on_join_chat(self, connection: ClientConnection, payload: RoomPayload) -> Reaction:
        room_key = payload.room_key
        await self.guard.ensure_member(room_key, connection.user_id)

        outbound = []
        cursor = await self.chat_repo.set_read_cursor(room_key, connection.user_id)
        if cursor is not None:
            outbound.append(Outbound(
                ServerEvent.MESSAGES_READ,
                {"roomKey": room_key, "readBy": connection.user_id},
                Target.ROOM_OTHERS,
                room_key,
            ))
        outbound.append(Outbound(ServerEvent.CHAT_JOINED, {"roomKey": room_key, "success": True}))

        self.logger.info(f"User {connection.user_id} joined chat: {room_key}")
        return Reaction(outbound=outbound, join=room_key)

    async def _on_leave_chat(self, connection: ClientConnection, payload: RoomPayload) -> Reaction:
        if self.registry.is_joined(connection, payload.room_key):
            self.logger.info(f"User {connection.user_id} left chat: {payload.room_key}")
        return Reaction(leave=payload.room_key)

    async def _on_send_message(self, connection: ClientConnection, payload: SendMessagePayload) -> Reaction:
        content = payload.content or ""
        if not content.strip():
            raise ValidationError("Message content cannot be empty")
        if len(content) > self.max_message_length:
            raise ValidationError(f"Message too long. Maximum {self.max_message_length} characters.")
        try:
            message_type = MessageType(payload.message_type)
        except ValueError:
            raise ValidationError(f"Unsupported message type: {payload.message_type}")

        if not await self.rate_limiter.allow(connection.user_id):
            raise RateLimited()

        await self.guard.ensure_member(payload.room_key, connection.user_id, "Chat not found or access denied")

        message = await self.chat_repo.append_message(
            payload.room_key, connection.user_id, content.strip(), message_type
        )

        sender = SenderSummary(
            user_id=connection.user_id,
            name=connection.identity.display_name,
            role=connection.identity.role,
        )
        new_message = NewMessageData.from_message(message, sender, payload.temp_id)
        confirmation = MessageSentData(
            message_id=message.id,
            room_key=message.room_key,
            timestamp=message.created_at.isoformat(),
            temp_id=payload.temp_id,
        )
        self.logger.info(f"Message sent in chat {payload.room_key} by {connection.user_id}")
        return Reaction(outbound=[
            Outbound(ServerEvent.NEW_MESSAGE, new_message.to_wire(), Target.ROOM, payload.room_key),
            Outbound(ServerEvent.MESSAGE_SENT, confirmation.to_wire()),
        ])

    def _typing(self, connection: ClientConnection, room_key: str, event: ServerEvent, data: dict) -> Reaction:
        if not self.registry.is_joined(connection, room_key):
            return Reaction()
        return Reaction(outbound=[Outbound(event, data, Target.ROOM_OTHERS, room_key)])

    async def _on_typing_start(self, connection: ClientConnection, payload: RoomPayload) -> Reaction:
        return self._typing(connection, payload.room_key, ServerEvent.USER_TYPING, {
            "roomKey": payload.room_key,
            "userId": connection.user_id,
            "name": connection.identity.display_name,
        })

    async def _on_typing_stop(self, connection: ClientConnection, payload: RoomPayload) -> Reaction:
        return self._typing(connection, payload.room_key, ServerEvent.USER_STOP_TYPING, {
            "roomKey": payload.room_key,
            "userId": connection.user_id,
        })

    async def _on_mark_read(self, connection: ClientConnection, payload: MarkReadPayload) -> Reaction:
        if not await self.guard.is_member(payload.room_key, connection.user_id):
            raise AccessDenied()

        cursor = await self.chat_repo.set_read_cursor(payload.room_key, connection.user_id, payload.message_ids)
        if cursor is None:
            return Reaction()

        data = {"roomKey": payload.room_key, "readBy": connection.user_id}
        if payload.message_ids:
            data["messageIds"] = payload.message_ids
        return Reaction(outbound=[Outbound(ServerEvent.MESSAGES_READ, data, Target.ROOM_OTHERS, payload.room_key)])

    async def _on_update_status(self, connection: ClientConnection, payload: StatusPayload) -> Reaction:
        return Reaction(outbound=[Outbound(
            ServerEvent.USER_STATUS_UPDATE,
            {"userId": connection.user_id, "status": payload.status},
            Target.OTHERS,
        )])
