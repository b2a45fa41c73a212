"""Comment thread of one post."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from ...errors import NotFoundError, SyncError, ValidationError
from ...gateway.base import asc, eq
from ...schemas.events import ChangeEvent, ChangeKind
from ...schemas.notifications import NotificationKind
from ...schemas.posts import Comment
from ..cache import Ordering
from ..optimistic import ActionResult, provisional_id
from .base import View, ViewContext, author_of

logger = logging.getLogger(__name__)


class CommentsView(View[Comment]):
    ordering = Ordering.OLDEST_FIRST
    name = "comments"

    def __init__(self, context: ViewContext, post_id: str, *, post_author_id: str | None = None) -> None:
        super().__init__(context)
        self.post_id = post_id
        self.post_author_id = post_author_id

    async def fetch(self) -> list[Comment]:
        if self.post_author_id is None:
            try:
                post = await self.gateway.query_one("posts", filters=[eq("id", self.post_id)])
            except NotFoundError as exc:
                raise NotFoundError("Post not found") from exc
            self.post_author_id = str(post["user_id"])
        rows = await self.gateway.query(
            "comments",
            filters=[eq("post_id", self.post_id)],
            related={"profiles": author_of("user_id")},
            order=asc("created_at"),
        )
        return [Comment.model_validate(row) for row in rows]

    async def subscribe(self) -> None:
        await self.listen("comments", self._on_comment, filters=[eq("post_id", self.post_id)])

    async def _on_comment(self, event: ChangeEvent) -> None:
        comment_id = event.record_id
        if comment_id is None:
            return
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(comment_id)
            return
        if event.kind is ChangeKind.UPDATE:
            content = event.record.get("content")
            if content is not None:
                self.cache.update(comment_id, lambda comment: comment.model_copy(update={"content": content}))
            return

        pending = self.engine.claim("comments", ChangeKind.INSERT, event.record, cache=self.cache)
        if comment_id in self.cache:
            return
        author = await self.author(str(event.record.get("user_id")))
        comment = Comment.model_validate({**event.record, "profiles": author})
        if pending is not None:
            self.engine.reconcile(self.cache, pending.provisional_id, comment)
        else:
            self.cache.upsert(comment)

    async def add_comment(self, text: str) -> ActionResult:
        try:
            viewer = self.require_viewer()
            content = (text or "").strip()
            if not content:
                raise ValidationError("Comment cannot be empty")
            if len(content) > self.settings.comment_max_length:
                raise ValidationError(f"Comments are limited to {self.settings.comment_max_length} characters")
        except SyncError as exc:
            return self.fail(exc)

        summary = self.viewer_summary()
        row = {"post_id": self.post_id, "user_id": viewer, "content": content}
        provisional = Comment(
            id=provisional_id(),
            created_at=datetime.now(timezone.utc),
            post_id=self.post_id,
            user_id=viewer,
            content=content,
            profiles=summary,
        )

        async def write() -> Comment:
            inserted = await self.gateway.insert("comments", row)
            return Comment.model_validate({**inserted, "profiles": summary})

        result = await self.engine.insert(self.cache, provisional, write, table="comments", action="add comment", row=row)
        if not result.ok:
            return self.fail(result)
        if self.post_author_id is not None:
            self.notify(self.post_author_id, NotificationKind.COMMENT, self.post_id)
        return result


__all__ = ["CommentsView"]
