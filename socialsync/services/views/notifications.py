"""Notification list of the signed-in account."""
from __future__ import annotations

import logging

from ...gateway.base import desc, eq
from ...schemas.events import ChangeEvent, ChangeKind
from ...schemas.notifications import Notification, NotificationKind
from ..optimistic import ActionResult
from .base import View, author_of

logger = logging.getLogger(__name__)

DESCRIPTIONS = {
    NotificationKind.LIKE: "liked your post",
    NotificationKind.COMMENT: "commented on your post",
    NotificationKind.FOLLOW: "started following you",
    NotificationKind.MESSAGE: "sent you a message",
}


def describe(notification: Notification) -> str:
    """Render e.g. ``"alice liked your post"``."""

    who = notification.from_user.username if notification.from_user is not None else "Someone"
    return f"{who} {DESCRIPTIONS.get(notification.type, 'sent you a notification')}"


class NotificationsView(View[Notification]):
    """Newest first; opening the list marks everything in it as read."""

    name = "notifications"

    async def fetch(self) -> list[Notification]:
        viewer = self.require_viewer()
        rows = await self.gateway.query(
            "notifications",
            filters=[eq("user_id", viewer)],
            related={"from_user": author_of("from_user_id")},
            order=desc("created_at"),
            limit=self.settings.notifications_page_size,
        )
        return [Notification.model_validate(row) for row in rows]

    async def refresh(self) -> ActionResult:
        result = await super().refresh()
        if result.ok and any(not item.is_read for item in self.cache):
            self.mark_all_read()
        return result

    def mark_all_read(self) -> None:
        viewer = self.viewer_id
        if viewer is None:
            return
        self.engine.fire_and_forget(
            lambda: self.gateway.update(
                "notifications", {"is_read": True}, filters=[eq("user_id", viewer), eq("is_read", False)]
            ),
            action="mark notifications read",
        )

    def _mark_read(self, notification_id: str) -> None:
        self.engine.fire_and_forget(
            lambda: self.gateway.update("notifications", {"is_read": True}, filters=[eq("id", notification_id)]),
            action="mark notification read",
        )

    async def subscribe(self) -> None:
        await self.listen("notifications", self._on_notification, filters=[eq("user_id", self.viewer_id)])

    async def _on_notification(self, event: ChangeEvent) -> None:
        notification_id = event.record_id
        if notification_id is None:
            return
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(notification_id)
            return
        if event.kind is ChangeKind.UPDATE:
            if "is_read" in event.record:
                is_read = bool(event.record["is_read"])
                self.cache.update(notification_id, lambda item: item.model_copy(update={"is_read": is_read}))
            return
        if notification_id in self.cache:
            return
        try:
            sender = await self.author(str(event.record.get("from_user_id")))
            notification = Notification.model_validate({**event.record, "from_user": sender})
        except ValueError as exc:
            logger.warning("Ignoring malformed notification %s: %s", notification_id, exc)
            return
        self.cache.upsert(notification)
        if not notification.is_read:
            self._mark_read(notification_id)


__all__ = ["DESCRIPTIONS", "NotificationsView", "describe"]
