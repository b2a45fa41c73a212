"""The viewer's chats with last message and unread counts."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from ...errors import NotFoundError, SyncError, ValidationError
from ...gateway.base import desc, eq, gt, in_, neq
from ...schemas.events import ChangeEvent, ChangeKind
from ...schemas.messages import ChatSummary, Message
from ..cache import RecentKeys
from ..optimistic import ActionResult, provisional_id
from .base import View, ViewContext, author_of

logger = logging.getLogger(__name__)


class ChatListView(View[ChatSummary]):
    """Newest chat first.

    Unread counts are messages from other members newer than the viewer's last
    sign-in, not a per-chat read cursor.
    """

    name = "chat-list"

    def __init__(self, context: ViewContext) -> None:
        super().__init__(context)
        self._seen_messages = RecentKeys()

    @property
    def last_seen(self) -> datetime | None:
        account = self.session.account
        return account.last_sign_in_at if account is not None else None

    async def _member_chat_ids(self, user_id: str) -> list[str]:
        rows = await self.gateway.query("chat_members", filters=[eq("user_id", user_id)], columns=("chat_id",))
        return list(dict.fromkeys(str(row["chat_id"]) for row in rows))

    async def fetch(self) -> list[ChatSummary]:
        viewer = self.require_viewer()
        chat_ids = await self._member_chat_ids(viewer)
        if not chat_ids:
            return []
        chats = await self.gateway.query("chats", filters=[in_("id", chat_ids)], order=desc("created_at"))
        return [await self._summarize(chat) for chat in chats]

    async def _summarize(self, chat: dict[str, Any]) -> ChatSummary:
        chat_id = str(chat["id"])
        summary: dict[str, Any] = dict(chat)

        last = await self.gateway.query(
            "messages", filters=[eq("chat_id", chat_id)], order=desc("created_at"), limit=1
        )
        if last:
            summary["last_message"] = last[0]["content"]
            summary["last_message_time"] = last[0]["created_at"]

        unread_filters = [eq("chat_id", chat_id), neq("user_id", self.viewer_id)]
        if self.last_seen is not None:
            unread_filters.append(gt("created_at", self.last_seen))
        summary["unread_count"] = await self.gateway.count("messages", filters=unread_filters)

        if not chat.get("is_group"):
            others = await self.gateway.query(
                "chat_members",
                filters=[eq("chat_id", chat_id), neq("user_id", self.viewer_id)],
                related={"profiles": author_of("user_id")},
                limit=1,
            )
            profile = others[0].get("profiles") if others else None
            summary["name"] = profile["username"] if profile else "Unknown user"
            summary["avatar_url"] = profile.get("avatar_url") if profile else None
        return ChatSummary.model_validate(summary)

    # --------------------------------------------------------------- events

    async def subscribe(self) -> None:
        await self.listen("messages", self._on_message)
        await self.listen("chat_members", self._on_membership, filters=[eq("user_id", self.viewer_id)])
        await self.listen("chats", self._on_chat)

    async def _on_message(self, event: ChangeEvent) -> None:
        if event.kind is not ChangeKind.INSERT:
            return
        chat_id = event.record.get("chat_id")
        message_id = event.record_id
        if chat_id is None or message_id is None or str(chat_id) not in self.cache:
            return
        if not self._seen_messages.add(message_id):
            return
        message = Message.model_validate(event.record)
        from_other = message.user_id != self.viewer_id

        def _apply(summary: ChatSummary) -> ChatSummary:
            update: dict[str, Any] = {}
            if summary.last_message_time is None or message.created_at >= summary.last_message_time:
                update["last_message"] = message.content
                update["last_message_time"] = message.created_at
            if from_other:
                update["unread_count"] = summary.unread_count + 1
            return summary.model_copy(update=update)

        self.cache.update(str(chat_id), _apply)

    async def _on_membership(self, event: ChangeEvent) -> None:
        chat_id = event.record.get("chat_id")
        if chat_id is None:
            return
        chat_id = str(chat_id)
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(chat_id)
            return
        if event.kind is not ChangeKind.INSERT or chat_id in self.cache:
            return
        try:
            chat = await self.gateway.query_one("chats", filters=[eq("id", chat_id)])
            summary = await self._summarize(chat)
        except SyncError as exc:
            logger.warning("Could not load new chat %s: %s", chat_id, exc.message)
            return
        if chat_id not in self.cache:
            self.cache.upsert(summary)

    async def _on_chat(self, event: ChangeEvent) -> None:
        chat_id = event.record_id
        if chat_id is None or chat_id not in self.cache:
            return
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(chat_id)
            return
        if event.kind is ChangeKind.UPDATE and event.record.get("is_group"):
            name = event.record.get("name")
            self.cache.update(chat_id, lambda summary: summary.model_copy(update={"name": name}))

    # -------------------------------------------------------------- actions

    async def find_direct_chat(self, other_id: str) -> str | None:
        """Id of an existing one-to-one chat between the viewer and ``other_id``."""

        viewer = self.require_viewer()
        mine = await self._member_chat_ids(viewer)
        if not mine:
            return None
        shared = await self.gateway.query(
            "chat_members", filters=[in_("chat_id", mine), eq("user_id", other_id)], columns=("chat_id",)
        )
        shared_ids = list(dict.fromkeys(str(row["chat_id"]) for row in shared))
        if not shared_ids:
            return None
        direct = await self.gateway.query(
            "chats",
            filters=[in_("id", shared_ids), eq("is_group", False)],
            order=desc("created_at"),
            limit=1,
        )
        return str(direct[0]["id"]) if direct else None

    async def start_direct_chat(self, other_id: str) -> ActionResult:
        """Open the direct chat with ``other_id``, creating it only when none exists.

        The result's ``record`` is the chat id.
        """

        try:
            viewer = self.require_viewer()
            if other_id == viewer:
                raise ValidationError("You cannot start a chat with yourself")
        except SyncError as exc:
            return self.fail(exc)

        async with self.engine.serialized(("direct-chat", other_id)):
            try:
                existing = await self.find_direct_chat(other_id)
            except SyncError as exc:
                return self.fail(exc)
            if existing is not None:
                logger.debug("Reusing direct chat %s with %s", existing, other_id)
                return ActionResult.success(existing)

            profile = await self.author(other_id)
            result = await self._create_chat(
                {"is_group": False, "created_by": viewer},
                [viewer, other_id],
                display_name=profile.username if profile is not None else "Unknown user",
                avatar_url=profile.avatar_url if profile is not None else None,
                action="start chat",
            )
            if not result.ok:
                return result
            return ActionResult.success(result.record.id)

    async def create_group_chat(self, name: str, member_ids: Sequence[str]) -> ActionResult:
        try:
            viewer = self.require_viewer()
            group_name = (name or "").strip()
            if not group_name:
                raise ValidationError("Group name is required")
            members = [user_id for user_id in dict.fromkeys(member_ids) if user_id != viewer]
            if not members:
                raise ValidationError("Add at least one member")
        except SyncError as exc:
            return self.fail(exc)

        return await self._create_chat(
            {"is_group": True, "created_by": viewer, "name": group_name},
            [viewer, *members],
            display_name=group_name,
            avatar_url=None,
            action="create group chat",
        )

    async def _create_chat(
        self,
        values: dict[str, Any],
        member_ids: list[str],
        *,
        display_name: str,
        avatar_url: str | None,
        action: str,
    ) -> ActionResult:
        provisional = ChatSummary(
            id=provisional_id(),
            created_at=datetime.now(timezone.utc),
            name=display_name,
            is_group=values["is_group"],
            created_by=values["created_by"],
            avatar_url=avatar_url,
        )

        async def write() -> ChatSummary:
            chat = await self.gateway.insert("chats", values)
            chat_id = str(chat["id"])
            try:
                await self.gateway.insert_many(
                    "chat_members", [{"chat_id": chat_id, "user_id": user_id} for user_id in member_ids]
                )
            except SyncError:
                try:
                    await self.gateway.delete("chats", filters=[eq("id", chat_id)])
                except SyncError as cleanup:
                    logger.warning("Could not remove incomplete chat %s: %s", chat_id, cleanup.message)
                raise
            return ChatSummary.model_validate({**chat, "name": display_name, "avatar_url": avatar_url})

        result = await self.engine.insert(self.cache, provisional, write, table="chats", action=action, row=values)
        if not result.ok:
            return self.fail(result)
        return result

    def summary(self, chat_id: str) -> ChatSummary:
        found = self.cache.get(chat_id)
        if found is None:
            raise NotFoundError("Chat not found")
        return found


__all__ = ["ChatListView"]
