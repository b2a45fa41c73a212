"""Utility mixins shared across ORM models."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.sql import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Creation timestamp with a timezone-aware, sub-second Python default."""

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)


__all__ = ["TimestampMixin", "utcnow"]
