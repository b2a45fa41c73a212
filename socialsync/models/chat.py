"""SQLAlchemy ORM models for chats, their membership rows and messages."""
from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression

from socialsync.database import Base
from .base import TimestampMixin


class Chat(TimestampMixin, Base):
    __tablename__ = "chats"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(120), nullable=True)
    is_group = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    created_by = Column(UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)

    members = relationship("ChatMember", back_populates="chat", passive_deletes=True)
    messages = relationship("Message", back_populates="chat", passive_deletes=True)


class ChatMember(TimestampMixin, Base):
    __tablename__ = "chat_members"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    chat_id = Column(UUID(as_uuid=True), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    chat = relationship("Chat", back_populates="members")

    __table_args__ = (UniqueConstraint("chat_id", "user_id", name="uq_chat_members_chat_user"),)


class Message(TimestampMixin, Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    chat_id = Column(UUID(as_uuid=True), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)

    chat = relationship("Chat", back_populates="messages")


__all__ = ["Chat", "ChatMember", "Message"]
