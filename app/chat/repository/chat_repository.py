# app/chat/repository/chat_repository.py

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple
import logging
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.chat.entity.chat import (
    CaseBoundChat, CaseRef, ChatKind, ChatRoom, ChatStatus, DirectChat, LastMessage,
    Message, MessagePage, MessageType, Participant, ReadCursor, utcnow,
)
from app.chat.errors import ChatNotFound, PersistenceError
from app.chat.repository.sql_schema.chat import ChatMessageModel, ChatParticipantModel, ChatRoomModel
from app.chat.service.service import IChatRepository
from pkg.log.logger import get_logger


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChatRepository(IChatRepository):
    """Handles all database interactions for chat rooms, participants and messages."""

    def __init__(self, db_session_factory, logger: logging.Logger | None = None):
        self.db_session_factory = db_session_factory
        self.logger = logger or get_logger(__name__)

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.db_session_factory() as session:
                yield session
        except (SQLAlchemyError, ConnectionError, OSError) as e:
            self.logger.error(f"Chat store failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}") from e

    # ────────────────────────────────────────────────
    # Mapping
    # ────────────────────────────────────────────────

    @staticmethod
    def _to_entity(row: ChatRoomModel, participants: List[ChatParticipantModel]) -> ChatRoom:
        members = [
            Participant(
                user_id=p.user_id,
                role=p.role,
                last_read_seq=p.last_read_seq or 0,
                last_read_at=_aware(p.last_read_at),
            )
            for p in sorted(participants, key=lambda p: p.position)
        ]
        last_message = None
        if row.last_message_at is not None:
            last_message = LastMessage(
                sender_id=row.last_message_sender,
                content=row.last_message_content or "",
                timestamp=_aware(row.last_message_at),
            )
        common = dict(
            room_key=row.room_key,
            participants=members,
            status=ChatStatus(row.status),
            last_message=last_message,
            created_at=_aware(row.created_at),
        )
        if row.kind == ChatKind.CASE_BOUND.value:
            return CaseBoundChat(case_ref=CaseRef(case_type=row.case_type, case_id=row.case_id), **common)
        return DirectChat(**common)

    @staticmethod
    def _to_message(row: ChatMessageModel) -> Message:
        return Message(
            id=row.id,
            seq=row.seq,
            room_key=row.room_key,
            sender_id=row.sender_id,
            content=row.content,
            message_type=MessageType(row.message_type),
            created_at=_aware(row.created_at),
        )

    async def _load_room(self, session: AsyncSession, room_key: str) -> Optional[ChatRoom]:
        row = await session.get(ChatRoomModel, room_key)
        if row is None:
            return None
        result = await session.execute(
            select(ChatParticipantModel).where(ChatParticipantModel.room_key == room_key)
        )
        return self._to_entity(row, list(result.scalars().all()))

    async def _load_case_room(self, session: AsyncSession, case_type: str, case_id: str) -> Optional[ChatRoom]:
        result = await session.execute(
            select(ChatRoomModel.room_key).where(
                ChatRoomModel.case_type == case_type,
                ChatRoomModel.case_id == case_id,
            )
        )
        room_key = result.scalar_one_or_none()
        if room_key is None:
            return None
        return await self._load_room(session, room_key)

    # ────────────────────────────────────────────────
    # Rooms
    # ────────────────────────────────────────────────

    async def find_room(self, room_key: str) -> Optional[ChatRoom]:
        async with self._session("load chat room") as session:
            return await self._load_room(session, room_key)

    async def find_case_room(self, case_type: str, case_id: str) -> Optional[ChatRoom]:
        async with self._session("load case chat room") as session:
            return await self._load_case_room(session, case_type, case_id)

    async def create_room(self, room: ChatRoom) -> Tuple[ChatRoom, bool]:
        async with self._session("create chat room") as session:
            existing = await self._load_room(session, room.room_key)
            if existing is not None:
                return existing, False

            case_ref = room.case_ref if isinstance(room, CaseBoundChat) else None
            session.add(ChatRoomModel(
                room_key=room.room_key,
                kind=room.kind.value,
                status=room.status.value,
                case_type=case_ref.case_type if case_ref else None,
                case_id=case_ref.case_id if case_ref else None,
                created_at=room.created_at,
                last_activity=room.created_at,
            ))
            for position, participant in enumerate(room.participants):
                session.add(ChatParticipantModel(
                    room_key=room.room_key,
                    user_id=participant.user_id,
                    role=participant.role,
                    position=position,
                    last_read_seq=0,
                ))
            try:
                await session.commit()
            except IntegrityError:
                # Lost a creation race; the winner's room is the room of record
                await session.rollback()
                existing = await self._load_room(session, room.room_key)
                if existing is None and case_ref is not None:
                    existing = await self._load_case_room(session, case_ref.case_type, case_ref.case_id)
                if existing is None:
                    raise
                return existing, False

            self.logger.info(f"Chat room created: {room.room_key} ({room.kind.value}, {room.status.value})")
            return room, True

    async def update_status(self, room_key: str, status: ChatStatus) -> Optional[ChatRoom]:
        async with self._session("update chat status") as session:
            row = await session.get(ChatRoomModel, room_key)
            if row is None:
                return None
            row.status = status.value
            await session.commit()
            return await self._load_room(session, room_key)

    async def list_rooms_for_user(self, user_id: str) -> List[ChatRoom]:
        async with self._session("list chat rooms") as session:
            result = await session.execute(
                select(ChatRoomModel)
                .join(ChatParticipantModel, ChatParticipantModel.room_key == ChatRoomModel.room_key)
                .where(ChatParticipantModel.user_id == str(user_id))
                .order_by(ChatRoomModel.last_activity.desc())
            )
            rows = list(result.scalars().all())
            if not rows:
                return []

            members: Dict[str, List[ChatParticipantModel]] = {row.room_key: [] for row in rows}
            result = await session.execute(
                select(ChatParticipantModel).where(ChatParticipantModel.room_key.in_(list(members)))
            )
            for participant in result.scalars().all():
                members[participant.room_key].append(participant)

            return [self._to_entity(row, members[row.room_key]) for row in rows]

    # ────────────────────────────────────────────────
    # Messages
    # ────────────────────────────────────────────────

    async def append_message(self, room_key: str, sender_id: str, content: str,
                             message_type: MessageType = MessageType.TEXT) -> Message:
        async with self._session("save message") as session:
            room = await session.get(ChatRoomModel, room_key)
            if room is None:
                raise ChatNotFound()

            now = utcnow()
            row = ChatMessageModel(
                id=str(uuid.uuid4()),
                room_key=room_key,
                sender_id=str(sender_id),
                content=content,
                message_type=message_type.value,
                created_at=now,
            )
            session.add(row)
            room.last_message_sender = str(sender_id)
            room.last_message_content = content
            room.last_message_at = now
            room.last_activity = now
            await session.flush()
            message = self._to_message(row)
            await session.commit()

            self.logger.debug(f"Message {message.id} saved in {room_key} (seq={message.seq})")
            return message

    async def list_messages(self, room_key: str, page: int = 1, limit: int = 50) -> MessagePage:
        page = max(page, 1)
        async with self._session("load messages") as session:
            total = await session.scalar(
                select(func.count()).select_from(ChatMessageModel).where(ChatMessageModel.room_key == room_key)
            )
            result = await session.execute(
                select(ChatMessageModel)
                .where(ChatMessageModel.room_key == room_key)
                .order_by(ChatMessageModel.created_at.desc(), ChatMessageModel.seq.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = list(result.scalars().all())
            rows.reverse()
            return MessagePage(
                messages=[self._to_message(r) for r in rows],
                page=page,
                limit=limit,
                total=total or 0,
            )

    # ────────────────────────────────────────────────
    # Read tracking
    # ────────────────────────────────────────────────

    async def set_read_cursor(self, room_key: str, user_id: str,
                              message_ids: Optional[List[str]] = None) -> Optional[ReadCursor]:
        async with self._session("update read cursor") as session:
            result = await session.execute(
                select(ChatParticipantModel).where(
                    ChatParticipantModel.room_key == room_key,
                    ChatParticipantModel.user_id == str(user_id),
                )
            )
            participant = result.scalar_one_or_none()
            if participant is None:
                return None

            query = select(func.max(ChatMessageModel.seq)).where(ChatMessageModel.room_key == room_key)
            if message_ids:
                query = query.where(ChatMessageModel.id.in_(message_ids))
            target = await session.scalar(query)
            if target is None:
                return None

            if target > (participant.last_read_seq or 0):
                participant.last_read_seq = target
                participant.last_read_at = utcnow()
                await session.commit()

            return ReadCursor(
                room_key=room_key,
                user_id=str(user_id),
                last_read_seq=participant.last_read_seq,
                last_read_at=_aware(participant.last_read_at) or utcnow(),
            )

    async def count_unread(self, room_key: str, user_id: str) -> int:
        async with self._session("count unread messages") as session:
            cursor = await session.scalar(
                select(ChatParticipantModel.last_read_seq).where(
                    ChatParticipantModel.room_key == room_key,
                    ChatParticipantModel.user_id == str(user_id),
                )
            )
            if cursor is None:
                return 0
            count = await session.scalar(
                select(func.count()).select_from(ChatMessageModel).where(
                    ChatMessageModel.room_key == room_key,
                    ChatMessageModel.seq > cursor,
                    ChatMessageModel.sender_id != str(user_id),
                )
            )
            return count or 0
