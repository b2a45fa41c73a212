"""Shared plumbing for per-screen views."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from ...config import Settings
from ...errors import AuthorizationError, SyncError
from ...gateway.base import Filter, Gateway, Related, eq
from ...schemas.base import Record
from ...schemas.events import ChangeEvent
from ...schemas.profiles import ProfileSummary
from ..cache import EntityCache, Ordering
from ..optimistic import ActionResult, MutationEngine
from ..router import DEGRADED_MESSAGE, ChangeEventRouter, Route
from ..session import SessionState

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

SUMMARY_COLUMNS = ("username", "avatar_url")


def author_of(local_key: str = "user_id") -> Related:
    """Embed the profile summary of the account referenced by ``local_key``."""

    return Related("profiles", local_key, columns=SUMMARY_COLUMNS)


@dataclass
class ViewState(Generic[R]):
    items: list[R] = field(default_factory=list)
    loading: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ViewContext:
    """Collaborators every view of one client shares."""

    gateway: Gateway
    session: SessionState
    engine: MutationEngine
    router: ChangeEventRouter
    settings: Settings


class View(Generic[R]):
    """A cache plus the subscriptions feeding it, bound to the session generation that opened it."""

    ordering: Ordering = Ordering.NEWEST_FIRST
    name = "view"

    def __init__(self, context: ViewContext) -> None:
        self.context = context
        self.gateway = context.gateway
        self.session = context.session
        self.engine = context.engine
        self.router = context.router
        self.settings = context.settings
        self.generation = context.session.generation
        self.viewer_id = context.session.account_id
        self.cache: EntityCache[R] = EntityCache(self.ordering, generation=self.generation, name=self.name)
        self.loading = False
        self.error: str | None = None
        self.closed = False
        self._routes: list[Route] = []
        self._close_callbacks: list[Callable[["View"], None]] = []
        self._authors: dict[str, ProfileSummary] = {}

    # ----------------------------------------------------------------- state

    @property
    def items(self) -> list[R]:
        return self.cache.items

    @property
    def state(self) -> ViewState[R]:
        return ViewState(items=self.cache.items, loading=self.loading, error=self.error)

    @property
    def stale(self) -> bool:
        return self.closed or self.generation != self.session.generation

    @property
    def degraded(self) -> bool:
        return any(route.degraded for route in self._routes)

    def viewer_summary(self) -> ProfileSummary | None:
        profile = self.session.profile
        if profile is None:
            return None
        return ProfileSummary(username=profile.username, avatar_url=profile.avatar_url)

    def require_viewer(self) -> str:
        if self.viewer_id is None or self.stale:
            raise AuthorizationError("You must be signed in")
        return self.viewer_id

    # ------------------------------------------------------------ lifecycle

    async def open(self) -> "View[R]":
        """Subscribe first, then load, so nothing committed in between is missed."""

        self.loading = True
        try:
            await self.subscribe()
        except SyncError as exc:
            logger.warning("%s could not subscribe: %s", self.name, exc.message)
            self.error = DEGRADED_MESSAGE
        await self.refresh()
        return self

    async def refresh(self) -> ActionResult:
        if self.stale:
            return ActionResult.failure(AuthorizationError("This view is closed"))
        self.loading = True
        try:
            records = await self.fetch()
        except SyncError as exc:
            logger.warning("Loading %s failed: %s", self.name, exc.message)
            self.error = exc.message
            return ActionResult.failure(exc)
        finally:
            self.loading = False
        if self.stale:
            return ActionResult.failure(AuthorizationError("This view is closed"))
        self.cache.replace(records)
        if not self.degraded:
            self.error = None
        return ActionResult.success(self.cache.items)

    async def fetch(self) -> list[R]:
        raise NotImplementedError

    async def subscribe(self) -> None:
        """Open the routes this view needs; views without live updates open none."""

    async def listen(
        self,
        table: str,
        handler: Callable[[ChangeEvent], Awaitable[None]],
        *,
        filters: Sequence[Filter] = (),
    ) -> Route | None:
        async def _guarded(event: ChangeEvent) -> None:
            if self.stale:
                return
            await handler(event)

        route = await self.router.open(
            table, _guarded, filters=filters, on_degraded=self._on_degraded, on_resumed=self._on_resumed
        )
        if self.stale:
            self.router.close(route)
            return None
        self._routes.append(route)
        return route

    def _on_degraded(self) -> None:
        self.error = DEGRADED_MESSAGE

    async def _on_resumed(self) -> None:
        if self.stale:
            return
        logger.info("%s reloading after live updates resumed", self.name)
        await self.refresh()

    def on_close(self, callback: Callable[["View"], None]) -> None:
        self._close_callbacks.append(callback)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for route in self._routes:
            self.router.close(route)
        self._routes.clear()
        self.cache.close()
        for callback in self._close_callbacks:
            callback(self)
        logger.debug("Closed %s", self.name)

    # -------------------------------------------------------------- helpers

    def fail(self, error: SyncError | ActionResult) -> ActionResult:
        result = error if isinstance(error, ActionResult) else ActionResult.failure(error)
        self.error = result.error
        return result

    async def author(self, user_id: str | None) -> ProfileSummary | None:
        """Profile summary for an event row, which carries no embedded projection."""

        if user_id is None:
            return None
        if user_id == self.viewer_id and self.session.profile is not None:
            return self.viewer_summary()
        cached = self._authors.get(user_id)
        if cached is not None:
            return cached
        try:
            row = await self.gateway.query_one("profiles", filters=[eq("id", user_id)], columns=SUMMARY_COLUMNS)
        except SyncError as exc:
            logger.warning("Could not load profile %s: %s", user_id, exc.message)
            return None
        summary = ProfileSummary.model_validate(row)
        self._authors[user_id] = summary
        return summary

    def notify(self, recipient_id: str, kind: str, related_id: str | None) -> None:
        """Queue a best-effort notification from the viewer to ``recipient_id``."""

        sender = self.viewer_id
        if sender is None or recipient_id == sender:
            return
        payload = {
            "user_id": recipient_id,
            "type": kind,
            "related_id": related_id,
            "from_user_id": sender,
            "is_read": False,
        }
        self.engine.fire_and_forget(
            lambda: self.gateway.insert("notifications", payload),
            action=f"{kind} notification",
        )


__all__ = ["SUMMARY_COLUMNS", "View", "ViewContext", "ViewState", "author_of"]
