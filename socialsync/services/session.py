"""The authenticated identity every other component reads from."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable

from ..config import Settings, get_settings
from ..errors import AuthorizationError, NetworkError, RemoteError, SyncError
from ..gateway.auth import AuthEvent, AuthEventKind
from ..gateway.base import Gateway
from ..schemas.profiles import Account, Profile
from ..streams import EventStream, Subscription
from .profile_service import ProfileService

logger = logging.getLogger(__name__)

TeardownHook = Callable[[int], Awaitable[None]]


class SessionStatus(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionChange:
    generation: int
    status: SessionStatus
    account: Account | None
    previous: Account | None = None


class SessionState:
    """Current account, loading flag and a generation counter bumped on every identity change.

    Before a new generation is published, every registered teardown hook is
    awaited so caches and subscriptions of the ending session are gone first.
    """

    def __init__(
        self,
        gateway: Gateway,
        *,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.gateway = gateway
        self.auth = gateway.auth
        self.settings = settings or get_settings()
        self.profiles = ProfileService(gateway, settings=self.settings, rng=rng)
        self.status = SessionStatus.UNAUTHENTICATED
        self.account: Account | None = None
        self.profile: Profile | None = None
        self.generation = 0
        self.loading = False
        self.profile_task: asyncio.Task | None = None
        self._changes: EventStream[SessionChange] = EventStream()
        self._teardown: list[TeardownHook] = []
        self._lock = asyncio.Lock()
        self._auth_events: Subscription[AuthEvent] | None = None
        self._watcher: asyncio.Task | None = None

    @property
    def authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED and self.account is not None

    @property
    def account_id(self) -> str | None:
        return self.account.id if self.account else None

    def on_session_change(self) -> Subscription[SessionChange]:
        return self._changes.subscribe()

    def add_teardown(self, hook: TeardownHook) -> None:
        self._teardown.append(hook)

    # ------------------------------------------------------------- transitions

    def _publish(self, previous: Account | None = None) -> None:
        self._changes.publish(
            SessionChange(generation=self.generation, status=self.status, account=self.account, previous=previous)
        )

    def _begin(self) -> None:
        self.loading = True
        if self.status is not SessionStatus.AUTHENTICATING:
            self.status = SessionStatus.AUTHENTICATING
            self._publish(self.account)

    def _abort(self) -> None:
        self.loading = False
        restored = SessionStatus.AUTHENTICATED if self.account is not None else SessionStatus.UNAUTHENTICATED
        if self.status is not restored:
            self.status = restored
            self._publish(self.account)

    async def _set_account(self, account: Account | None) -> None:
        async with self._lock:
            previous = self.account
            self.loading = False
            if previous is not None and account is not None and previous.id == account.id:
                self.account = account
                if self.status is not SessionStatus.AUTHENTICATED:
                    self.status = SessionStatus.AUTHENTICATED
                    self._publish(previous)
                return
            if previous is None and account is None:
                if self.status is not SessionStatus.UNAUTHENTICATED:
                    self.status = SessionStatus.UNAUTHENTICATED
                    self._publish()
                return

            self.generation += 1
            if self.profile_task is not None and not self.profile_task.done():
                self.profile_task.cancel()
            for hook in list(self._teardown):
                try:
                    await hook(self.generation)
                except Exception:
                    logger.exception("Session teardown hook failed")
            self.account = account
            self.profile = None
            self.status = SessionStatus.AUTHENTICATED if account is not None else SessionStatus.UNAUTHENTICATED
            logger.info(
                "Session generation %d: %s",
                self.generation,
                f"signed in as {account.id}" if account is not None else "signed out",
            )
            self._publish(previous)
            if account is not None:
                self.profile_task = asyncio.create_task(self._ensure_profile(account, self.generation))

    async def _ensure_profile(self, account: Account, generation: int) -> None:
        try:
            profile = await self.profiles.ensure_profile(account)
        except SyncError as exc:
            logger.warning("Profile provisioning for %s failed: %s", account.id, exc.message)
            return
        if generation == self.generation:
            self.profile = profile

    async def require_profile(self) -> Profile | None:
        """The current profile, provisioning it again if the sign-in attempt did not."""

        if self.account is None:
            return None
        if self.profile_task is not None and not self.profile_task.done():
            await asyncio.gather(self.profile_task, return_exceptions=True)
        if self.profile is None:
            await self._ensure_profile(self.account, self.generation)
        return self.profile

    # ------------------------------------------------------------- lifecycle

    async def initialize(self) -> Account | None:
        """Restore an existing session and start following auth events."""

        if self._watcher is None:
            self._auth_events = self.auth.events()
            self._watcher = asyncio.create_task(self._watch_auth(self._auth_events))
        self._begin()
        try:
            session = await self.auth.get_session()
        except RemoteError as exc:
            logger.error("Error getting session: %s", exc.message)
            session = None
        await self._set_account(session.account if session is not None else None)
        return self.account

    async def _watch_auth(self, events: Subscription[AuthEvent]) -> None:
        # Events can be stale by the time they are read; follow the provider's
        # current session rather than the payload.
        async for event in events:
            if event.kind is AuthEventKind.PASSWORD_RECOVERY:
                continue
            if self.status is SessionStatus.AUTHENTICATING and self.account is None:
                continue
            session = self.auth.current_session
            await self._set_account(session.account if session is not None else None)

    async def close(self) -> None:
        if self._auth_events is not None:
            self._auth_events.cancel()
        tasks = [task for task in (self._watcher, self.profile_task) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._changes.close()

    # ------------------------------------------------------------- auth flows

    async def sign_up(self, email: str, password: str, username: str | None = None) -> Account | None:
        """Create an account; returns ``None`` while email confirmation is pending."""

        self._begin()
        metadata = {"username": username.strip()} if username and username.strip() else {}
        try:
            session = await self.auth.sign_up(
                email, password, metadata=metadata, redirect_to=f"{self.settings.site_url.rstrip('/')}/auth/confirm"
            )
        except SyncError:
            self._abort()
            raise
        if session is None:
            self._abort()
            return None
        await self._set_account(session.account)
        return session.account

    async def sign_in_with_password(self, email: str, password: str) -> Account:
        self._begin()
        try:
            session = await self.auth.sign_in_with_password(email, password)
        except SyncError:
            self._abort()
            raise
        await self._set_account(session.account)
        return session.account

    async def sign_in_with_provider(self, provider: str) -> str:
        """Start a provider sign-in; the session stays authenticating until the callback completes."""

        self._begin()
        try:
            return await self.auth.sign_in_with_provider(
                provider, redirect_to=f"{self.settings.site_url.rstrip('/')}/auth/callback"
            )
        except SyncError:
            self._abort()
            raise

    async def complete_provider_sign_in(self, code: str) -> Account:
        self._begin()
        try:
            session = await self.auth.exchange_code_for_session(code)
        except SyncError:
            self._abort()
            raise
        await self._set_account(session.account)
        return session.account

    async def request_magic_link(self, email: str) -> None:
        await self.auth.request_magic_link(email, redirect_to=f"{self.settings.site_url.rstrip('/')}/auth/callback")

    async def verify_otp(self, email: str, token: str, *, kind: str = "email") -> Account:
        self._begin()
        try:
            session = await self.auth.verify_otp(email, token, kind=kind)
        except SyncError:
            self._abort()
            raise
        await self._set_account(session.account)
        return session.account

    async def reset_password(self, email: str) -> None:
        await self.auth.reset_password_for_email(
            email, redirect_to=f"{self.settings.site_url.rstrip('/')}/auth/reset-password"
        )

    async def update_password(self, new_password: str) -> Account:
        account = await self.auth.update_password(new_password)
        await self._set_account(account)
        return account

    async def refresh(self) -> Account | None:
        """Refresh the access token; a rejected refresh signs the session out."""

        if self.account is None:
            return None
        try:
            session = await self.auth.refresh_session()
        except NetworkError:
            raise
        except AuthorizationError as exc:
            logger.warning("Session refresh failed: %s", exc.message)
            await self._set_account(None)
            return None
        await self._set_account(session.account)
        return session.account

    async def sign_out(self) -> None:
        try:
            await self.auth.sign_out()
        except RemoteError as exc:
            logger.warning("Remote sign-out failed: %s", exc.message)
        await self._set_account(None)


__all__ = ["SessionChange", "SessionState", "SessionStatus"]
