"""Shared configuration for client-side record projections."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ProjectionModel(BaseModel):
    """Base for every projection; ignores columns the client does not track."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")


class Record(ProjectionModel):
    """An entity owned by the backend, keyed by ``id`` and ordered by ``created_at``."""

    id: str
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        return value

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


def optional_id(value: Any) -> Any:
    """Coerce UUID foreign keys to their string form."""

    if isinstance(value, UUID):
        return str(value)
    return value


__all__ = ["ProjectionModel", "Record", "as_utc", "optional_id"]
