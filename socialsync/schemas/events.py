"""Change events delivered by the realtime surface."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


class ChangeKind(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change; ``record`` holds the old row for deletes."""

    table: str
    kind: ChangeKind
    record: dict[str, Any]
    old: dict[str, Any] | None = None
    commit_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def record_id(self) -> str | None:
        value = self.record.get("id")
        return str(value) if value is not None else None


__all__ = ["ChangeEvent", "ChangeKind"]
