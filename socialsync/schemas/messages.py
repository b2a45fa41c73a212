"""Schemas used by chat views."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import field_validator

from .base import Record, as_utc, optional_id
from .profiles import ProfileSummary


class Chat(Record):
    name: str | None = None
    is_group: bool = False
    created_by: str | None = None

    @field_validator("created_by", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


class ChatMember(Record):
    chat_id: str
    user_id: str
    profiles: ProfileSummary | None = None
    is_creator: bool = False

    @field_validator("chat_id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


class Message(Record):
    chat_id: str
    user_id: str
    content: str
    profiles: ProfileSummary | None = None

    @field_validator("chat_id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


class ChatSummary(Record):
    """One row of the chat list; name and avatar come from the other member for direct chats."""

    name: str | None = None
    is_group: bool = False
    created_by: str | None = None
    avatar_url: str | None = None
    last_message: str | None = None
    last_message_time: datetime | None = None
    unread_count: int = 0

    @field_validator("created_by", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)

    @field_validator("last_message_time")
    @classmethod
    def _normalize(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


__all__ = ["Chat", "ChatMember", "Message", "ChatSummary"]
