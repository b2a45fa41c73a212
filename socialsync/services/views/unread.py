"""Unread badges for notifications and messages."""
from __future__ import annotations

import logging

from ...gateway.base import eq, gt, in_, neq
from ...schemas.base import Record
from ...schemas.events import ChangeEvent, ChangeKind
from ..cache import RecentKeys
from .base import View, ViewContext

logger = logging.getLogger(__name__)


class UnreadCounters(View[Record]):
    """Counts only; holds no records.

    Unread messages are those written by others in the viewer's chats after
    the viewer's last sign-in.
    """

    name = "unread"

    def __init__(self, context: ViewContext) -> None:
        super().__init__(context)
        self.notifications = 0
        self.messages = 0
        self._chat_ids: set[str] = set()
        self._counted = RecentKeys()

    async def fetch(self) -> list[Record]:
        viewer = self.require_viewer()
        self.notifications = await self._count_notifications(viewer)
        rows = await self.gateway.query("chat_members", filters=[eq("user_id", viewer)], columns=("chat_id",))
        self._chat_ids = {str(row["chat_id"]) for row in rows}
        self.messages = await self._count_messages(viewer)
        return []

    async def _count_notifications(self, viewer: str) -> int:
        return await self.gateway.count("notifications", filters=[eq("user_id", viewer), eq("is_read", False)])

    async def _count_messages(self, viewer: str) -> int:
        if not self._chat_ids:
            return 0
        filters = [in_("chat_id", sorted(self._chat_ids)), neq("user_id", viewer)]
        account = self.session.account
        if account is not None and account.last_sign_in_at is not None:
            filters.append(gt("created_at", account.last_sign_in_at))
        return await self.gateway.count("messages", filters=filters)

    @property
    def total(self) -> int:
        return self.notifications + self.messages

    async def subscribe(self) -> None:
        await self.listen("notifications", self._on_notification, filters=[eq("user_id", self.viewer_id)])
        await self.listen("messages", self._on_message)
        await self.listen("chat_members", self._on_membership, filters=[eq("user_id", self.viewer_id)])

    def _first_time(self, table: str, record_id: str | None) -> bool:
        if record_id is None:
            return True
        return self._counted.add((table, record_id))

    async def _on_notification(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.INSERT:
            if not event.record.get("is_read") and self._first_time("notifications", event.record_id):
                self.notifications += 1
            return
        self.notifications = await self._count_notifications(self.require_viewer())

    async def _on_message(self, event: ChangeEvent) -> None:
        if event.kind is not ChangeKind.INSERT:
            return
        if str(event.record.get("chat_id")) not in self._chat_ids:
            return
        if str(event.record.get("user_id")) == self.viewer_id:
            return
        if self._first_time("messages", event.record_id):
            self.messages += 1

    async def _on_membership(self, event: ChangeEvent) -> None:
        chat_id = event.record.get("chat_id")
        if chat_id is None:
            return
        if event.kind is ChangeKind.INSERT:
            self._chat_ids.add(str(chat_id))
        elif event.kind is ChangeKind.DELETE:
            self._chat_ids.discard(str(chat_id))
            self.messages = await self._count_messages(self.require_viewer())

    def clear_messages(self) -> None:
        """Reset the message badge locally, e.g. when the chat list is shown."""

        self.messages = 0


__all__ = ["UnreadCounters"]
