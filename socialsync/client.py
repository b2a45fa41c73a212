"""Composition root: one gateway, one session and the views opened on top of them."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

import httpx

from .config import Settings, get_settings
from .errors import SyncError
from .gateway.base import Gateway
from .gateway.local import LocalBackend
from .gateway.rest import RestGateway
from .schemas.profiles import Profile
from .security.secrets import require_value
from .services.optimistic import ActionResult, MutationEngine
from .services.router import ChangeEventRouter
from .services.session import SessionState
from .services.uploads import ImageUpload
from .services.views import (
    ChatListView,
    ChatView,
    CommentsView,
    FeedView,
    NotificationsView,
    UnreadCounters,
    View,
    ViewContext,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

V = TypeVar("V", bound=View)


def configure_logging(level: str | int | None = None) -> None:
    """Route package logs to stderr at ``level`` (defaults to ``LOG_LEVEL``)."""

    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)


class SocialClient:
    """Owns the session, the mutation engine and the router shared by every open view.

    Views are bound to the session generation they were opened in. When the
    signed-in account changes, every open view is closed and every route is
    cancelled before the change reaches other listeners.
    """

    def __init__(
        self,
        gateway: Gateway,
        *,
        settings: Settings | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.session = SessionState(gateway, settings=self.settings, rng=rng)
        self.engine = MutationEngine()
        self.router = ChangeEventRouter(
            gateway, generation=lambda: self.session.generation, settings=self.settings, sleep=sleep
        )
        self._views: set[View] = set()
        self.session.add_teardown(self._end_generation)

    @property
    def context(self) -> ViewContext:
        return ViewContext(
            gateway=self.gateway,
            session=self.session,
            engine=self.engine,
            router=self.router,
            settings=self.settings,
        )

    @property
    def open_views(self) -> list[View]:
        return list(self._views)

    async def _end_generation(self, generation: int) -> None:
        views = list(self._views)
        for view in views:
            view.close()
        await self.router.close_all()
        await self.engine.reset()
        if views:
            logger.info("Closed %d view(s) before session generation %d", len(views), generation)

    async def initialize(self) -> None:
        await self.session.initialize()

    async def aclose(self) -> None:
        backlog = self.router.backlog()
        if backlog:
            logger.debug("Closing with %d change event(s) not yet dispatched", backlog)
        for view in list(self._views):
            view.close()
        await self.router.close_all()
        await self.engine.drain()
        await self.session.close()
        await self.gateway.aclose()

    async def __aenter__(self) -> "SocialClient":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ views

    async def _open(self, view: V) -> V:
        self._views.add(view)
        view.on_close(self._views.discard)
        await view.open()
        return view

    async def open_feed(self, *, author_id: str | None = None) -> FeedView:
        return await self._open(FeedView(self.context, author_id=author_id))

    async def open_comments(self, post_id: str, *, post_author_id: str | None = None) -> CommentsView:
        return await self._open(CommentsView(self.context, post_id, post_author_id=post_author_id))

    async def open_chat(self, chat_id: str) -> ChatView:
        return await self._open(ChatView(self.context, chat_id))

    async def open_chat_list(self) -> ChatListView:
        return await self._open(ChatListView(self.context))

    async def open_notifications(self) -> NotificationsView:
        return await self._open(NotificationsView(self.context))

    async def open_unread_counters(self) -> UnreadCounters:
        return await self._open(UnreadCounters(self.context))

    # --------------------------------------------------------------- profiles

    async def get_profile(self, profile_id: str) -> Profile:
        return await self.session.profiles.get_profile(profile_id)

    async def search_profiles(self, query: str) -> list[Profile]:
        return await self.session.profiles.search_profiles(query)

    async def list_member_candidates(self, exclude_ids: list[str]) -> list[Profile]:
        return await self.session.profiles.list_member_candidates(exclude_ids)

    async def update_avatar(self, upload: ImageUpload) -> ActionResult:
        account_id = self.session.account_id
        if account_id is None:
            return ActionResult.failure("You must be signed in")
        try:
            profile = await self.session.profiles.update_avatar(account_id, upload)
        except SyncError as exc:
            logger.info("Avatar update failed: %s", exc.message)
            return ActionResult.failure(exc)
        if self.session.account_id == account_id:
            self.session.profile = profile
        return ActionResult.success(profile)


def build_gateway(
    settings: Settings | None = None,
    *,
    backend: LocalBackend | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Gateway:
    """A RestGateway when ``BACKEND_URL`` is set, otherwise a gateway into a local backend."""

    settings = settings or get_settings()
    if backend is not None:
        return backend.gateway()
    if settings.backend_url:
        anon_key = require_value("BACKEND_ANON_KEY", settings.backend_anon_key)
        logger.info("Using hosted backend at %s", settings.backend_url)
        return RestGateway(
            settings.backend_url,
            anon_key,
            site_url=settings.site_url,
            timeout=settings.request_timeout,
            transport=transport,
        )
    logger.info("Using local backend at %s", settings.database_url)
    return LocalBackend(settings=settings).gateway()


def create_client(
    settings: Settings | None = None,
    *,
    backend: LocalBackend | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    rng: random.Random | None = None,
) -> SocialClient:
    settings = settings or get_settings()
    gateway = build_gateway(settings, backend=backend, transport=transport)
    return SocialClient(gateway, settings=settings, rng=rng)


__all__ = ["LOG_FORMAT", "SocialClient", "build_gateway", "configure_logging", "create_client"]
