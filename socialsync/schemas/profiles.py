"""Schemas for accounts and profiles."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from .base import ProjectionModel, Record, as_utc, optional_id


class ProfileSummary(ProjectionModel):
    """Author fields embedded next to posts, comments, messages and notifications."""

    username: str
    avatar_url: str | None = None


class Profile(Record):
    username: str
    avatar_url: str | None = None


class Account(ProjectionModel):
    """The authenticated identity as reported by the auth surface."""

    id: str
    email: str | None = None
    user_metadata: dict[str, Any] = Field(default_factory=dict)
    last_sign_in_at: datetime | None = None
    created_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return optional_id(value)

    @field_validator("user_metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return value or {}

    @field_validator("last_sign_in_at", "created_at")
    @classmethod
    def _normalize(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


__all__ = ["Account", "Profile", "ProfileSummary"]
