"""Feed of posts with like and comment counters."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ...errors import NotFoundError, SyncError, ValidationError
from ...gateway.base import Related, desc, eq
from ...schemas.events import ChangeEvent, ChangeKind
from ...schemas.notifications import NotificationKind
from ...schemas.posts import Post
from ..cache import RecentKeys
from ..optimistic import ActionResult, provisional_id
from ..uploads import POST_IMAGE_BUCKET, ImageUpload, upload_image, validate_image
from .base import View, ViewContext, author_of

logger = logging.getLogger(__name__)


class FeedView(View[Post]):
    """Newest posts first, optionally scoped to one author (profile pages).

    Like and comment counters follow change events from every client; this
    client's own like toggles are applied optimistically and their echoes are
    recognised so they are not counted twice.
    """

    name = "feed"

    def __init__(self, context: ViewContext, *, author_id: str | None = None) -> None:
        super().__init__(context)
        self.author_id = author_id
        self._applied = RecentKeys()

    def _related(self) -> dict[str, Related]:
        related = {
            "profiles": author_of("user_id"),
            "likes_count": Related("likes", "id", remote_key="post_id", many=True, count=True),
            "comments_count": Related("comments", "id", remote_key="post_id", many=True, count=True),
        }
        if self.viewer_id is not None:
            related["user_likes"] = Related(
                "likes", "id", remote_key="post_id", columns=("id",), many=True, filters=(eq("user_id", self.viewer_id),)
            )
        return related

    @staticmethod
    def _to_post(row: dict[str, Any]) -> Post:
        user_likes = row.pop("user_likes", None) or []
        return Post.model_validate({**row, "user_has_liked": bool(user_likes)})

    def _scope(self) -> list:
        return [eq("user_id", self.author_id)] if self.author_id is not None else []

    async def fetch(self) -> list[Post]:
        rows = await self.gateway.query(
            "posts",
            filters=self._scope(),
            related=self._related(),
            order=desc("created_at"),
            limit=self.settings.feed_page_size,
        )
        return [self._to_post(row) for row in rows]

    async def _load_post(self, post_id: str) -> Post | None:
        try:
            row = await self.gateway.query_one("posts", filters=[eq("id", post_id)], related=self._related())
        except NotFoundError:
            return None
        return self._to_post(row)

    # --------------------------------------------------------------- events

    async def subscribe(self) -> None:
        await self.listen("posts", self._on_post, filters=self._scope())
        await self.listen("likes", self._on_like)
        await self.listen("comments", self._on_comment)

    def _first_time(self, table: str, event: ChangeEvent) -> bool:
        record_id = event.record_id
        if record_id is None:
            return True
        return self._applied.add((table, event.kind, record_id))

    async def _on_post(self, event: ChangeEvent) -> None:
        post_id = event.record_id
        if post_id is None:
            return
        if event.kind is ChangeKind.DELETE:
            self.cache.remove(post_id)
            return
        if event.kind is ChangeKind.UPDATE:
            changes = {key: event.record[key] for key in ("content", "image_url") if key in event.record}
            self.cache.update(post_id, lambda post: post.model_copy(update=changes))
            return

        pending = self.engine.claim("posts", ChangeKind.INSERT, event.record, cache=self.cache)
        if post_id in self.cache:
            return
        post = await self._load_post(post_id)
        if post is None:
            return
        if pending is not None:
            self.engine.reconcile(self.cache, pending.provisional_id, post)
        else:
            self.cache.upsert(post)

    async def _on_like(self, event: ChangeEvent) -> None:
        row = event.record
        post_id = row.get("post_id")
        if post_id is None or str(post_id) not in self.cache:
            return
        post_id = str(post_id)
        if event.kind is ChangeKind.UPDATE or not self._first_time("likes", event):
            return
        if self.engine.claim("likes", event.kind, row, cache=self.cache) is not None:
            return
        delta = 1 if event.kind is ChangeKind.INSERT else -1
        own = self.viewer_id is not None and str(row.get("user_id")) == self.viewer_id

        def _apply(post: Post) -> Post:
            update: dict[str, Any] = {"likes_count": max(post.likes_count + delta, 0)}
            if own:
                update["user_has_liked"] = delta > 0
            return post.model_copy(update=update)

        self.cache.update(post_id, _apply)

    async def _on_comment(self, event: ChangeEvent) -> None:
        post_id = event.record.get("post_id")
        if post_id is None or str(post_id) not in self.cache:
            return
        if event.kind is ChangeKind.UPDATE or not self._first_time("comments", event):
            return
        delta = 1 if event.kind is ChangeKind.INSERT else -1
        self.cache.update(
            str(post_id), lambda post: post.model_copy(update={"comments_count": max(post.comments_count + delta, 0)})
        )

    # -------------------------------------------------------------- actions

    async def toggle_like(self, post_id: str) -> ActionResult:
        """Like or unlike ``post_id``; toggles of one post run one after another."""

        try:
            viewer = self.require_viewer()
        except SyncError as exc:
            return self.fail(exc)

        async with self.engine.serialized(("like", post_id)):
            post = self.cache.get(post_id)
            if post is None:
                return self.fail(NotFoundError("Post not found"))
            liked = post.user_has_liked
            delta = -1 if liked else 1
            row = {"post_id": post_id, "user_id": viewer}
            kind = ChangeKind.DELETE if liked else ChangeKind.INSERT
            pending = self.engine.track("likes", kind, row, cache=self.cache)

            async def write() -> Any:
                if liked:
                    return await self.gateway.delete("likes", filters=[eq("post_id", post_id), eq("user_id", viewer)])
                return await self.gateway.insert("likes", row)

            result = await self.engine.patch(
                self.cache,
                post_id,
                lambda current: current.model_copy(
                    update={"user_has_liked": not liked, "likes_count": current.likes_count + delta}
                ),
                write,
                action="unlike" if liked else "like",
                revert=lambda current: current.model_copy(
                    update={"user_has_liked": liked, "likes_count": current.likes_count - delta}
                ),
            )
            if not result.ok:
                self.engine.abandon(pending)
                return self.fail(result)

            written = result.record
            if isinstance(written, list):
                written = written[0] if written else None
            self.engine.settle(pending, written.get("id") if isinstance(written, dict) else None)
            if not liked:
                self.notify(post.user_id, NotificationKind.LIKE, post_id)
            return ActionResult.success(self.cache.get(post_id))

    async def create_post(self, content: str, image: ImageUpload | None = None) -> ActionResult:
        try:
            viewer = self.require_viewer()
            text = (content or "").strip()
            if not text and image is None:
                raise ValidationError("Write something or add an image")
            if len(text) > self.settings.post_max_length:
                raise ValidationError(f"Posts are limited to {self.settings.post_max_length} characters")
            if image is not None:
                validate_image(image, max_bytes=self.settings.post_image_max_bytes)
        except SyncError as exc:
            return self.fail(exc)

        summary = self.viewer_summary()

        async def write() -> Post:
            image_url = None
            if image is not None:
                image_url = await upload_image(
                    self.gateway, POST_IMAGE_BUCKET, viewer, image, max_bytes=self.settings.post_image_max_bytes
                )
            row = await self.gateway.insert("posts", {"user_id": viewer, "content": text, "image_url": image_url})
            return Post.model_validate({**row, "profiles": summary})

        if self.author_id is not None and self.author_id != viewer:
            # Not shown in this feed; write without an optimistic entry.
            try:
                return ActionResult.success(await write())
            except SyncError as exc:
                return self.fail(exc)

        provisional = Post(
            id=provisional_id(),
            created_at=datetime.now(timezone.utc),
            user_id=viewer,
            content=text,
            profiles=summary,
        )
        result = await self.engine.insert(
            self.cache,
            provisional,
            write,
            table="posts",
            action="create post",
            row={"user_id": viewer, "content": text},
        )
        if not result.ok:
            return self.fail(result)
        return result


__all__ = ["FeedView"]
