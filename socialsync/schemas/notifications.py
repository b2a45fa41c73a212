"""Schemas for notifications."""
from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import field_validator

from .base import Record, optional_id
from .profiles import ProfileSummary


class NotificationKind(StrEnum):
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    MESSAGE = "message"


class Notification(Record):
    user_id: str
    type: NotificationKind
    related_id: str | None = None
    from_user_id: str
    is_read: bool = False
    from_user: ProfileSummary | None = None

    @field_validator("user_id", "related_id", "from_user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


__all__ = ["Notification", "NotificationKind"]
