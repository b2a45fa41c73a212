"""Ordered, id-keyed in-memory views over backend records."""
from __future__ import annotations

import bisect
import logging
from collections import OrderedDict
from enum import StrEnum
from typing import Callable, Generic, Hashable, Iterable, Iterator, TypeVar

from ..schemas.base import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

RECENT_KEYS_LIMIT = 512


class Ordering(StrEnum):
    NEWEST_FIRST = "newest_first"
    OLDEST_FIRST = "oldest_first"


class EntityCache(Generic[R]):
    """One view's records, kept sorted by ``created_at`` with unique ids.

    Entries marked pending are local optimistic state: a full ``replace`` keeps
    them, and keeps the local version when the server copy has the same id.
    Records with equal timestamps stay in arrival order.
    """

    def __init__(self, ordering: Ordering, *, generation: int = 0, name: str = "cache") -> None:
        self.ordering = ordering
        self.generation = generation
        self.name = name
        self.version = 0
        self._items: list[R] = []
        self._pending: set[str] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[R]:
        return iter(list(self._items))

    def __contains__(self, record_id: object) -> bool:
        return any(item.id == record_id for item in self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def items(self) -> list[R]:
        return list(self._items)

    def ids(self) -> list[str]:
        return [item.id for item in self._items]

    def get(self, record_id: str) -> R | None:
        for item in self._items:
            if item.id == record_id:
                return item
        return None

    def _key(self, record: R) -> float:
        stamp = record.created_at.timestamp()
        return -stamp if self.ordering is Ordering.NEWEST_FIRST else stamp

    def _position(self, record_id: str) -> int | None:
        for index, item in enumerate(self._items):
            if item.id == record_id:
                return index
        return None

    def _insert_sorted(self, record: R) -> None:
        index = bisect.bisect_right(self._items, self._key(record), key=self._key)
        self._items.insert(index, record)

    def _changed(self) -> None:
        self.version += 1

    def replace(self, records: Iterable[R]) -> None:
        """Swap in a full query result, keeping pending local entries."""

        if self._closed:
            return
        local = {item.id: item for item in self._items if item.id in self._pending}
        incoming: dict[str, R] = {}
        for record in records:
            incoming[record.id] = local.get(record.id, record)
        for record_id, item in local.items():
            incoming.setdefault(record_id, item)
        self._items = []
        for record in sorted(incoming.values(), key=self._key):
            self._items.append(record)
        self._pending &= set(incoming)
        self._changed()

    def upsert(self, record: R) -> R | None:
        """Insert ``record`` at its sort position or replace the entry with the same id."""

        if self._closed:
            logger.debug("Ignoring upsert of %s into closed %s", record.id, self.name)
            return None
        index = self._position(record.id)
        if index is not None:
            current = self._items[index]
            if self._key(current) == self._key(record):
                self._items[index] = record
                self._changed()
                return record
            del self._items[index]
        self._insert_sorted(record)
        self._changed()
        return record

    def remove(self, record_id: str) -> R | None:
        if self._closed:
            return None
        index = self._position(record_id)
        self._pending.discard(record_id)
        if index is None:
            return None
        removed = self._items.pop(index)
        self._changed()
        return removed

    def update(self, record_id: str, change: Callable[[R], R]) -> R | None:
        """Apply ``change`` to the entry with ``record_id``, if present."""

        current = self.get(record_id)
        if current is None or self._closed:
            return None
        return self.upsert(change(current))

    def mark_pending(self, record_id: str) -> None:
        self._pending.add(record_id)

    def clear_pending(self, record_id: str) -> None:
        self._pending.discard(record_id)

    def is_pending(self, record_id: str) -> bool:
        return record_id in self._pending

    def clear(self) -> None:
        self._items = []
        self._pending.clear()
        self._changed()

    def close(self) -> None:
        """Drop every entry; a closed cache ignores all further writes."""

        self.clear()
        self._closed = True


class RecentKeys:
    """Keys of the last ``limit`` change events a view has applied; older ones are forgotten."""

    def __init__(self, limit: int = RECENT_KEYS_LIMIT) -> None:
        self.limit = limit
        self._keys: OrderedDict[Hashable, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def add(self, key: Hashable) -> bool:
        """Remember ``key``; False when it was already remembered."""

        if key in self._keys:
            return False
        self._keys[key] = None
        while len(self._keys) > self.limit:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()


__all__ = ["EntityCache", "Ordering", "RECENT_KEYS_LIMIT", "RecentKeys"]
