"""SQLAlchemy ORM model for public profiles (1:1 with accounts)."""
from __future__ import annotations

from sqlalchemy import Column, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from socialsync.database import Base
from .base import TimestampMixin


class Profile(TimestampMixin, Base):
    __tablename__ = "profiles"

    id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    username = Column(String(150), unique=True, nullable=False, index=True)
    avatar_url = Column(String(1024), nullable=True)

    account = relationship("Account", back_populates="profile")
    posts = relationship("Post", back_populates="author", cascade="all, delete-orphan")


__all__ = ["Profile"]
