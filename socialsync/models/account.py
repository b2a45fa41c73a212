"""SQLAlchemy ORM model for authentication accounts of the local backend."""
from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from socialsync.database import Base
from .base import TimestampMixin


class Account(TimestampMixin, Base):
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=True, index=True)
    hashed_password = Column(String(255), nullable=True)
    provider = Column(String(32), nullable=False, default="email", server_default="email")
    user_metadata = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    email_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    last_sign_in_at = Column(DateTime(timezone=True), nullable=True)

    profile = relationship("Profile", back_populates="account", uselist=False, cascade="all, delete-orphan")


__all__ = ["Account"]
