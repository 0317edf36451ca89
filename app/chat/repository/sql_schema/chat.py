from sqlalchemy import (
    BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.sql import func
import uuid

from pkg.db_util.sql_alchemy.declarative_base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
SeqType = BigInteger().with_variant(Integer, "sqlite")


# Chat Room Table
class ChatRoomModel(Base):
    __tablename__ = "chat_rooms"
    __table_args__ = (UniqueConstraint("case_type", "case_id", name="uq_chat_rooms_case_ref"),)

    room_key = Column(String(255), primary_key=True)
    kind = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False)
    # case-bound rooms only
    case_type = Column(String(64), nullable=True)
    case_id = Column(String(64), nullable=True)
    # denormalized for list views
    last_message_sender = Column(String, nullable=True)
    last_message_content = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_activity = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# Participant Table (also holds the per-participant read cursor)
class ChatParticipantModel(Base):
    __tablename__ = "chat_participants"
    __table_args__ = (UniqueConstraint("room_key", "user_id", name="uq_chat_participants_member"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_key = Column(String(255), ForeignKey("chat_rooms.room_key"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    role = Column(String(32), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    last_read_seq = Column(SeqType, nullable=False, default=0)
    last_read_at = Column(DateTime(timezone=True), nullable=True)


# Message Table

class ChatMessageModel(Base):
    __tablename__ = "chat_messages"

    # insertion order of record, breaks created_at ties
    seq = Column(SeqType, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, index=True, default=lambda: str(uuid.uuid4()))
    room_key = Column(String(255), ForeignKey("chat_rooms.room_key"), nullable=False, index=True)
    sender_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(32), nullable=False, default="text")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
