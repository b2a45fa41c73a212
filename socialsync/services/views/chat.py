"""One open chat: header, member roster and transcript."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from ...errors import AuthorizationError, NotFoundError, SyncError, ValidationError
from ...gateway.base import asc, eq
from ...schemas.events import ChangeEvent, ChangeKind
from ...schemas.messages import Chat, ChatMember, Message
from ...schemas.notifications import NotificationKind
from ..cache import EntityCache, Ordering
from ..optimistic import ActionResult, provisional_id
from .base import View, ViewContext, author_of

logger = logging.getLogger(__name__)


class ChatView(View[Message]):
    """Transcript oldest first; new messages are appended as they arrive."""

    ordering = Ordering.OLDEST_FIRST
    name = "chat"

    def __init__(self, context: ViewContext, chat_id: str) -> None:
        super().__init__(context)
        self.chat_id = chat_id
        self.details: EntityCache[Chat] = EntityCache(Ordering.OLDEST_FIRST, generation=self.generation, name="chat-details")
        self.members: EntityCache[ChatMember] = EntityCache(
            Ordering.OLDEST_FIRST, generation=self.generation, name="chat-members"
        )

    # ---------------------------------------------------------------- header

    @property
    def chat(self) -> Chat | None:
        return self.details.get(self.chat_id)

    @property
    def is_creator(self) -> bool:
        chat = self.chat
        return chat is not None and chat.created_by is not None and chat.created_by == self.viewer_id

    def other_member(self) -> ChatMember | None:
        for member in self.members:
            if member.user_id != self.viewer_id:
                return member
        return None

    @property
    def title(self) -> str:
        chat = self.chat
        if chat is None:
            return ""
        if chat.is_group:
            return chat.name or "Group chat"
        other = self.other_member()
        if other is not None and other.profiles is not None:
            return other.profiles.username
        return "Unknown user"

    @property
    def avatar_url(self) -> str | None:
        chat = self.chat
        if chat is None or chat.is_group:
            return None
        other = self.other_member()
        return other.profiles.avatar_url if other is not None and other.profiles is not None else None

    def _member(self, row: dict[str, Any], created_by: str | None) -> ChatMember:
        return ChatMember.model_validate({**row, "is_creator": str(row.get("user_id")) == created_by})

    async def fetch(self) -> list[Message]:
        try:
            chat = Chat.model_validate(await self.gateway.query_one("chats", filters=[eq("id", self.chat_id)]))
        except NotFoundError as exc:
            raise NotFoundError("Chat not found") from exc
        members = await self.gateway.query(
            "chat_members",
            filters=[eq("chat_id", self.chat_id)],
            related={"profiles": author_of("user_id")},
            order=asc("created_at"),
        )
        messages = await self.gateway.query(
            "messages",
            filters=[eq("chat_id", self.chat_id)],
            related={"profiles": author_of("user_id")},
            order=asc("created_at"),
        )
        self.details.replace([chat])
        self.members.replace([self._member(row, chat.created_by) for row in members])
        return [Message.model_validate(row) for row in messages]

    # --------------------------------------------------------------- events

    async def subscribe(self) -> None:
        scope = [eq("chat_id", self.chat_id)]
        await self.listen("messages", self._on_message, filters=scope)
        await self.listen("chat_members", self._on_member, filters=scope)
        await self.listen("chats", self._on_chat, filters=[eq("id", self.chat_id)])

    async def _on_message(self, event: ChangeEvent) -> None:
        message_id = event.record_id
        if message_id is None:
            return
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(message_id)
            return
        if event.kind is ChangeKind.UPDATE:
            content = event.record.get("content")
            if content is not None:
                self.cache.update(message_id, lambda message: message.model_copy(update={"content": content}))
            return

        pending = self.engine.claim("messages", ChangeKind.INSERT, event.record, cache=self.cache)
        if message_id in self.cache:
            return
        author = await self.author(str(event.record.get("user_id")))
        message = Message.model_validate({**event.record, "profiles": author})
        if pending is not None:
            self.engine.reconcile(self.cache, pending.provisional_id, message)
        else:
            self.cache.upsert(message)

    async def _on_member(self, event: ChangeEvent) -> None:
        member_id = event.record_id
        if member_id is None:
            return
        if event.kind is ChangeKind.DELETE:
            removed = self.members.remove(member_id)
            user_id = removed.user_id if removed is not None else event.record.get("user_id")
            if user_id is not None and str(user_id) == self.viewer_id:
                self.cache.clear()
                self.error = "You are no longer a member of this chat"
            return
        if event.kind is not ChangeKind.INSERT:
            return
        pending = self.engine.claim("chat_members", ChangeKind.INSERT, event.record, cache=self.members)
        if member_id in self.members:
            return
        author = await self.author(str(event.record.get("user_id")))
        chat = self.chat
        member = self._member({**event.record, "profiles": author}, chat.created_by if chat else None)
        if pending is not None:
            self.engine.reconcile(self.members, pending.provisional_id, member)
        else:
            self.members.upsert(member)

    async def _on_chat(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.DELETE:
            self.details.remove(self.chat_id)
            self.members.clear()
            self.cache.clear()
            self.error = "This chat was deleted"
            return
        if event.kind is ChangeKind.UPDATE:
            changes = {key: event.record[key] for key in ("name", "is_group") if key in event.record}
            self.details.update(self.chat_id, lambda chat: chat.model_copy(update=changes))

    # -------------------------------------------------------------- actions

    async def send_message(self, text: str) -> ActionResult:
        try:
            viewer = self.require_viewer()
            content = (text or "").strip()
            if not content:
                raise ValidationError("Message cannot be empty")
            if len(content) > self.settings.message_max_length:
                raise ValidationError(f"Messages are limited to {self.settings.message_max_length} characters")
        except SyncError as exc:
            return self.fail(exc)

        summary = self.viewer_summary()
        row = {"chat_id": self.chat_id, "user_id": viewer, "content": content}
        provisional = Message(
            id=provisional_id(),
            created_at=datetime.now(timezone.utc),
            chat_id=self.chat_id,
            user_id=viewer,
            content=content,
            profiles=summary,
        )

        async def write() -> Message:
            inserted = await self.gateway.insert("messages", row)
            return Message.model_validate({**inserted, "profiles": summary})

        result = await self.engine.insert(self.cache, provisional, write, table="messages", action="send message", row=row)
        if not result.ok:
            return self.fail(result)
        chat = self.chat
        if chat is not None and not chat.is_group:
            other = self.other_member()
            if other is not None:
                self.notify(other.user_id, NotificationKind.MESSAGE, self.chat_id)
        return result

    async def rename(self, name: str) -> ActionResult:
        chat = self.chat
        new_name = (name or "").strip()
        try:
            self.require_viewer()
            if chat is None:
                raise NotFoundError("Chat not found")
            if not chat.is_group:
                raise ValidationError("Only group chats can be renamed")
            if not new_name:
                raise ValidationError("Group name cannot be empty")
        except SyncError as exc:
            return self.fail(exc)

        result = await self.engine.patch(
            self.details,
            self.chat_id,
            lambda current: current.model_copy(update={"name": new_name}),
            lambda: self.gateway.update("chats", {"name": new_name}, filters=[eq("id", self.chat_id)]),
            action="rename chat",
        )
        if not result.ok:
            return self.fail(result)
        if not result.record:
            self.details.upsert(chat)
            return self.fail(AuthorizationError("You cannot rename this chat"))
        return ActionResult.success(self.chat)

    async def delete_chat(self) -> ActionResult:
        """Delete the chat with its transcript and roster; only its creator may."""

        try:
            self.require_viewer()
            if self.chat is None:
                raise NotFoundError("Chat not found")
            if not self.is_creator:
                raise AuthorizationError("Only the chat creator can delete this chat")
        except SyncError as exc:
            return self.fail(exc)

        scope = [eq("chat_id", self.chat_id)]

        async def write() -> Any:
            await self.gateway.delete("messages", filters=scope)
            await self.gateway.delete("chat_members", filters=scope)
            return await self.gateway.delete("chats", filters=[eq("id", self.chat_id)])

        result = await self.engine.remove(self.details, self.chat_id, write, action="delete chat")
        if not result.ok:
            await self.refresh()
            return self.fail(result)
        self.members.clear()
        self.cache.clear()
        return result

    async def leave(self) -> ActionResult:
        try:
            viewer = self.require_viewer()
        except SyncError as exc:
            return self.fail(exc)
        membership = next((member for member in self.members if member.user_id == viewer), None)
        if membership is None:
            return self.fail(NotFoundError("You are not a member of this chat"))

        result = await self.engine.remove(
            self.members,
            membership.id,
            lambda: self.gateway.delete("chat_members", filters=[eq("chat_id", self.chat_id), eq("user_id", viewer)]),
            action="leave chat",
        )
        if not result.ok:
            return self.fail(result)
        self.cache.clear()
        return result

    async def add_members(self, user_ids: Sequence[str]) -> ActionResult:
        try:
            self.require_viewer()
            if self.chat is None:
                raise NotFoundError("Chat not found")
        except SyncError as exc:
            return self.fail(exc)
        present = {member.user_id for member in self.members}
        wanted = [user_id for user_id in dict.fromkeys(user_ids) if user_id not in present]
        if not wanted:
            return self.fail(ValidationError("Select at least one new member"))

        created_by = self.chat.created_by
        added: list[ChatMember] = []
        for user_id in wanted:
            row = {"chat_id": self.chat_id, "user_id": user_id}
            profile = await self.author(user_id)
            provisional = ChatMember(
                id=provisional_id(),
                created_at=datetime.now(timezone.utc),
                chat_id=self.chat_id,
                user_id=user_id,
                profiles=profile,
                is_creator=user_id == created_by,
            )

            async def write(row: dict[str, Any] = row, profile: Any = profile) -> ChatMember:
                inserted = await self.gateway.insert("chat_members", row)
                return self._member({**inserted, "profiles": profile}, created_by)

            result = await self.engine.insert(
                self.members, provisional, write, table="chat_members", action="add member", row=row
            )
            if not result.ok:
                return self.fail(result)
            added.append(result.record)
        return ActionResult.success(added)

    async def remove_member(self, user_id: str) -> ActionResult:
        try:
            self.require_viewer()
            chat = self.chat
            if chat is None:
                raise NotFoundError("Chat not found")
            if not self.is_creator:
                raise AuthorizationError("Only the chat creator can remove members")
            if user_id == chat.created_by:
                raise ValidationError("The chat creator cannot be removed")
        except SyncError as exc:
            return self.fail(exc)
        member = next((item for item in self.members if item.user_id == user_id), None)
        if member is None:
            return self.fail(NotFoundError("Member not found"))

        result = await self.engine.remove(
            self.members,
            member.id,
            lambda: self.gateway.delete("chat_members", filters=[eq("chat_id", self.chat_id), eq("user_id", user_id)]),
            action="remove member",
        )
        if not result.ok:
            return self.fail(result)
        return result

    def close(self) -> None:
        super().close()
        self.details.close()
        self.members.close()


__all__ = ["ChatView"]
