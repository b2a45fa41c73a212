"""Schemas for posts, likes and comments."""
from __future__ import annotations

from typing import Any

from pydantic import field_validator

from .base import Record, optional_id
from .profiles import ProfileSummary


class Post(Record):
    """A feed entry with its derived counters and per-viewer flag."""

    user_id: str
    content: str = ""
    image_url: str | None = None
    profiles: ProfileSummary | None = None
    likes_count: int = 0
    comments_count: int = 0
    user_has_liked: bool = False

    @field_validator("user_id", mode="before")
    @classmethod
    def _stringify_user(cls, value: Any) -> Any:
        return optional_id(value)


class Like(Record):
    post_id: str
    user_id: str

    @field_validator("post_id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


class Comment(Record):
    post_id: str
    user_id: str
    content: str
    profiles: ProfileSummary | None = None

    @field_validator("post_id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return optional_id(value)


__all__ = ["Post", "Like", "Comment"]
