"""In-process realtime fan-out for the local backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from ..errors import NetworkError
from ..schemas.events import ChangeEvent, ChangeKind
from ..streams import Subscription
from .base import Filter, matches_all

logger = logging.getLogger(__name__)

ReadCheck = Callable[[str, dict, "str | None"], bool]


@dataclass(frozen=True)
class _Channel:
    table: str
    filters: tuple[Filter, ...]
    reader: Callable[[], str | None]


class ChangeFeed:
    """Track per-table subscriptions and deliver matching change events.

    Inserts and updates are only delivered to subscribers allowed to read the
    row; deletes carry the old row and skip the read check, since the row no
    longer exists to be checked against.
    """

    def __init__(self, can_read: ReadCheck | None = None) -> None:
        self._channels: dict[str, set[Subscription[ChangeEvent]]] = {}
        self._connections: dict[Subscription[ChangeEvent], _Channel] = {}
        self.can_read = can_read

    def subscribe(
        self,
        table: str,
        filters: Sequence[Filter],
        reader: Callable[[], str | None],
    ) -> Subscription[ChangeEvent]:
        subscription: Subscription[ChangeEvent] = Subscription(self._disconnect)
        self._channels.setdefault(table, set()).add(subscription)
        self._connections[subscription] = _Channel(table=table, filters=tuple(filters), reader=reader)
        return subscription

    def subscriber_count(self, table: str | None = None) -> int:
        if table is None:
            return len(self._connections)
        return len(self._channels.get(table, ()))

    def publish(self, event: ChangeEvent) -> int:
        targets = list(self._channels.get(event.table, ()))
        delivered = 0
        for subscription in targets:
            channel = self._connections.get(subscription)
            if channel is None or not matches_all(channel.filters, event.record):
                continue
            if event.kind is not ChangeKind.DELETE and self.can_read is not None:
                if not self.can_read(event.table, event.record, channel.reader()):
                    continue
            if subscription.push(event):
                delivered += 1
        return delivered

    def drop(self, table: str | None = None, exc: BaseException | None = None) -> int:
        """Terminate subscriptions as a lost connection would."""

        error = exc or NetworkError("Realtime connection lost")
        dropped = 0
        for subscription, channel in list(self._connections.items()):
            if table is not None and channel.table != table:
                continue
            subscription.fail(error)
            self._disconnect(subscription)
            dropped += 1
        if dropped:
            logger.info("Dropped %d realtime subscription(s) for %s", dropped, table or "all tables")
        return dropped

    def _disconnect(self, subscription: Subscription[ChangeEvent]) -> None:
        channel = self._connections.pop(subscription, None)
        if channel is None:
            return
        group = self._channels.get(channel.table)
        if group is None:
            return
        group.discard(subscription)
        if not group:
            self._channels.pop(channel.table, None)


__all__ = ["ChangeFeed"]
