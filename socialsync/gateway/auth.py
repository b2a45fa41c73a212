"""Auth surface consumed by :class:`~socialsync.services.session.SessionState`."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..schemas.profiles import Account
from ..streams import EventStream, Subscription

logger = logging.getLogger(__name__)


class AuthEventKind(StrEnum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: datetime
    account: Account


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    session: AuthSession | None


class AuthProvider(ABC):
    """Credential, provider, OTP and recovery flows plus a session event stream."""

    def __init__(self) -> None:
        self._events: EventStream[AuthEvent] = EventStream()
        self._session: AuthSession | None = None

    @property
    def current_session(self) -> AuthSession | None:
        return self._session

    @property
    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    @property
    def account_id(self) -> str | None:
        return self._session.account.id if self._session else None

    def events(self) -> Subscription[AuthEvent]:
        return self._events.subscribe()

    def _set_session(self, kind: AuthEventKind, session: AuthSession | None) -> None:
        self._session = session
        logger.debug("Auth event %s for %s", kind, session.account.id if session else None)
        self._events.publish(AuthEvent(kind=kind, session=session))

    async def get_session(self) -> AuthSession | None:
        return self._session

    @abstractmethod
    async def sign_up(
        self, email: str, password: str, *, metadata: dict[str, Any] | None = None, redirect_to: str | None = None
    ) -> AuthSession | None:
        """Create an account; returns a session when no confirmation step is required."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    async def sign_in_with_provider(self, provider: str, *, redirect_to: str | None = None) -> str:
        """Return the URL the user must visit to authorize with ``provider``."""

    @abstractmethod
    async def exchange_code_for_session(self, code: str) -> AuthSession:
        """Complete a provider (or magic-link) callback."""

    @abstractmethod
    async def request_magic_link(self, email: str, *, redirect_to: str | None = None) -> None:
        ...

    @abstractmethod
    async def verify_otp(self, email: str, token: str, *, kind: str = "email") -> AuthSession:
        ...

    @abstractmethod
    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        ...

    @abstractmethod
    async def update_password(self, new_password: str) -> Account:
        ...

    @abstractmethod
    async def refresh_session(self) -> AuthSession:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...


__all__ = ["AuthEvent", "AuthEventKind", "AuthProvider", "AuthSession"]
