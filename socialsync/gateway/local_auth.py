"""Auth surface of the local backend: passwords, provider codes, OTP and recovery."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode
from uuid import UUID

from passlib.context import CryptContext
from sqlalchemy import func, select

from ..errors import AuthorizationError, ConflictError, NotFoundError, RemoteError, ValidationError
from ..models import Account as AccountRow
from ..models.base import utcnow
from ..schemas.profiles import Account
from .auth import AuthEventKind, AuthProvider, AuthSession

if TYPE_CHECKING:
    from .local import LocalBackend

logger = logging.getLogger(__name__)

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    """Hash a plain-text password."""

    return _pwd_context.hash(password)


def verify_password(password: str, hashed_password: str | None) -> bool:
    """Verify that ``password`` matches ``hashed_password``."""

    if not hashed_password:
        return False
    try:
        return _pwd_context.verify(password, hashed_password)
    except (ValueError, TypeError):  # pragma: no cover - malformed hash
        logger.exception("Password verification failed due to an unexpected error")
        return False


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def account_from_row(row: AccountRow) -> Account:
    return Account(
        id=str(row.id),
        email=row.email,
        user_metadata=dict(row.user_metadata or {}),
        last_sign_in_at=row.last_sign_in_at,
        created_at=row.created_at,
    )


class LocalAuthProvider(AuthProvider):
    """One client's view of the local backend's auth service."""

    def __init__(self, backend: "LocalBackend") -> None:
        super().__init__()
        self._backend = backend

    async def _suspend(self) -> None:
        await asyncio.sleep(self._backend.latency)

    def _find_account(self, db, email: str) -> AccountRow | None:
        return db.scalar(select(AccountRow).where(func.lower(AccountRow.email) == _normalize_email(email)))

    def _start_session(self, account_id: UUID, kind: AuthEventKind) -> AuthSession:
        with self._backend.session_factory() as db:
            row = db.get(AccountRow, account_id)
            if row is None:
                raise NotFoundError("Account no longer exists")
            if kind is AuthEventKind.SIGNED_IN:
                row.last_sign_in_at = utcnow()
                db.commit()
                db.refresh(row)
            account = account_from_row(row)
        access_token, expires_at = self._backend.issue_access_token(account.id)
        refresh_token = self._backend.issue_refresh_token(account.id)
        session = AuthSession(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            account=account,
        )
        self._set_session(kind, session)
        return session

    async def sign_up(
        self, email: str, password: str, *, metadata: dict[str, Any] | None = None, redirect_to: str | None = None
    ) -> AuthSession | None:
        await self._suspend()
        normalized = _normalize_email(email)
        if "@" not in normalized:
            raise RemoteError("Unable to validate email address: invalid format")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise RemoteError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")

        with self._backend.session_factory() as db:
            if self._find_account(db, normalized) is not None:
                raise ConflictError("User already registered")
            row = AccountRow(
                email=normalized,
                hashed_password=hash_password(password),
                provider="email",
                user_metadata=dict(metadata or {}),
                email_confirmed_at=utcnow() if self._backend.auto_confirm else None,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            account_id = row.id

        if not self._backend.auto_confirm:
            self._backend.send_code(normalized, "signup", account_id, redirect_to=redirect_to)
            return None
        return self._start_session(account_id, AuthEventKind.SIGNED_IN)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        await self._suspend()
        with self._backend.session_factory() as db:
            row = self._find_account(db, email)
            if row is None or not verify_password(password, row.hashed_password):
                raise AuthorizationError("Invalid login credentials")
            if row.email_confirmed_at is None:
                raise AuthorizationError("Email not confirmed")
            account_id = row.id
        return self._start_session(account_id, AuthEventKind.SIGNED_IN)

    async def sign_in_with_provider(self, provider: str, *, redirect_to: str | None = None) -> str:
        await self._suspend()
        normalized = (provider or "").strip().lower()
        if normalized not in self._backend.enabled_providers:
            raise ValidationError("Unsupported provider: provider is not enabled")
        query = urlencode({"provider": normalized, "redirect_to": redirect_to or self._backend.site_url})
        return f"{self._backend.site_url.rstrip('/')}/auth/v1/authorize?{query}"

    async def exchange_code_for_session(self, code: str) -> AuthSession:
        await self._suspend()
        pending = self._backend.consume_code(code)
        if pending is None:
            raise AuthorizationError("Invalid or expired code")
        return self._start_session(pending.account_id, AuthEventKind.SIGNED_IN)

    async def request_magic_link(self, email: str, *, redirect_to: str | None = None) -> None:
        await self._suspend()
        normalized = _normalize_email(email)
        with self._backend.session_factory() as db:
            row = self._find_account(db, normalized)
            if row is None:
                row = AccountRow(email=normalized, provider="email", user_metadata={}, email_confirmed_at=None)
                db.add(row)
                db.commit()
                db.refresh(row)
            account_id = row.id
        self._backend.send_code(normalized, "magiclink", account_id, redirect_to=redirect_to)

    async def verify_otp(self, email: str, token: str, *, kind: str = "email") -> AuthSession:
        await self._suspend()
        pending = self._backend.consume_otp(_normalize_email(email), token)
        if pending is None:
            raise AuthorizationError("Token has expired or is invalid")
        with self._backend.session_factory() as db:
            row = db.get(AccountRow, pending.account_id)
            if row is not None and row.email_confirmed_at is None:
                row.email_confirmed_at = utcnow()
                db.commit()
        if pending.kind == "recovery" or kind == "recovery":
            session = self._start_session(pending.account_id, AuthEventKind.SIGNED_IN)
            self._set_session(AuthEventKind.PASSWORD_RECOVERY, session)
            return session
        return self._start_session(pending.account_id, AuthEventKind.SIGNED_IN)

    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        await self._suspend()
        normalized = _normalize_email(email)
        with self._backend.session_factory() as db:
            row = self._find_account(db, normalized)
            account_id = row.id if row is not None else None
        if account_id is None:
            # Unknown addresses are not disclosed to the caller.
            logger.info("Password reset requested for unknown address")
            return
        self._backend.send_code(normalized, "recovery", account_id, redirect_to=redirect_to)

    async def update_password(self, new_password: str) -> Account:
        await self._suspend()
        session = self.current_session
        if session is None:
            raise AuthorizationError("Auth session missing")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise RemoteError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
        account_id = self._backend.decode_access_token(session.access_token)
        with self._backend.session_factory() as db:
            row = db.get(AccountRow, UUID(account_id))
            if row is None:
                raise NotFoundError("Account no longer exists")
            row.hashed_password = hash_password(new_password)
            db.commit()
            db.refresh(row)
            account = account_from_row(row)
        updated = AuthSession(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            account=account,
        )
        self._set_session(AuthEventKind.USER_UPDATED, updated)
        return account

    async def refresh_session(self) -> AuthSession:
        await self._suspend()
        session = self.current_session
        if session is None:
            raise AuthorizationError("Auth session missing")
        account_id = self._backend.redeem_refresh_token(session.refresh_token)
        if account_id is None:
            self._set_session(AuthEventKind.SIGNED_OUT, None)
            raise AuthorizationError("Invalid refresh token")
        access_token, expires_at = self._backend.issue_access_token(account_id)
        refreshed = AuthSession(
            access_token=access_token,
            refresh_token=self._backend.issue_refresh_token(account_id),
            expires_at=expires_at,
            account=session.account,
        )
        self._set_session(AuthEventKind.TOKEN_REFRESHED, refreshed)
        return refreshed

    async def sign_out(self) -> None:
        await self._suspend()
        session = self.current_session
        if session is not None:
            self._backend.revoke_refresh_token(session.refresh_token)
        self._set_session(AuthEventKind.SIGNED_OUT, None)

    def session_expired(self, now: datetime | None = None) -> bool:
        session = self.current_session
        if session is None:
            return False
        return (now or utcnow()) >= session.expires_at


__all__ = ["LocalAuthProvider", "account_from_row", "hash_password", "verify_password"]
