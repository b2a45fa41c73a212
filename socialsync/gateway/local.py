"""SQLAlchemy-backed stand-in for the hosted backend.

A :class:`LocalBackend` owns what the hosted service shares between clients:
the database, the realtime feed, object storage and the auth registries
(refresh tokens, OTP and callback codes). Each client talks to it through its
own :class:`SqlGateway`, which authenticates with the client's access token
and enforces the same row-level policies the hosted schema declares.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import urlencode
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import DateTime, false, func, inspect, or_, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from ..config import Settings, get_settings
from ..database import build_engine, build_session_factory, init_db
from ..errors import (
    AuthorizationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RemoteError,
    SyncError,
    ValidationError,
)
from ..models import Account as AccountRow
from ..models import Chat, ChatMember, Comment, Like, Message, Notification, Post, Profile
from ..models.base import utcnow
from ..schemas.events import ChangeEvent, ChangeKind
from ..security.secrets import require_secret
from ..streams import Subscription
from .base import Filter, FilterOp, Gateway, MutationKind, Order, Related, RelatedMap, eq, normalize_order, normalize_value
from .feed import ChangeFeed
from .local_auth import LocalAuthProvider
from .storage import ObjectStorage, build_storage

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
CODE_TTL = timedelta(hours=1)
DEFAULT_PROVIDERS = ("google", "apple")

TABLES: dict[str, type] = {
    "profiles": Profile,
    "posts": Post,
    "likes": Like,
    "comments": Comment,
    "chats": Chat,
    "chat_members": ChatMember,
    "messages": Message,
    "notifications": Notification,
}

PUBLIC_TABLES = frozenset({"profiles", "posts", "likes", "comments"})

_CHANGE_KINDS = {
    MutationKind.INSERT: ChangeKind.INSERT,
    MutationKind.UPDATE: ChangeKind.UPDATE,
    MutationKind.DELETE: ChangeKind.DELETE,
}


@dataclass(frozen=True)
class PendingCode:
    account_id: UUID
    kind: str
    expires_at: datetime


@dataclass(frozen=True)
class OutboxMessage:
    """An auth email the local backend would have sent."""

    email: str
    kind: str
    token: str
    link: str


def _as_uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def to_record(obj: Any) -> dict[str, Any]:
    """Flatten an ORM row into the plain record shape a hosted backend returns."""

    mapper = inspect(obj).mapper
    return {attr.key: normalize_value(getattr(obj, attr.key)) for attr in mapper.column_attrs}


def _select_columns(record: dict[str, Any], columns: Sequence[str] | None) -> dict[str, Any]:
    if not columns:
        return dict(record)
    return {key: record.get(key) for key in columns}


class LocalBackend:
    """Shared state of the local backend; hand out one :class:`SqlGateway` per client."""

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        settings: Settings | None = None,
        storage: ObjectStorage | None = None,
        jwt_secret: str | None = None,
        enabled_providers: Iterable[str] = DEFAULT_PROVIDERS,
        auto_confirm: bool = True,
        latency: float = 0.0,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or build_engine(self.settings.database_url)
        init_db(self.engine)
        self.session_factory = build_session_factory(self.engine)
        self.feed = ChangeFeed(can_read=self.can_read)
        self.storage = storage or build_storage(self.settings)
        self.jwt_secret = jwt_secret if jwt_secret is not None else require_secret("LOCAL_JWT_SECRET")
        self.enabled_providers = frozenset(provider.lower() for provider in enabled_providers)
        self.auto_confirm = auto_confirm
        self.latency = latency
        self.site_url = self.settings.site_url
        self.outbox: list[OutboxMessage] = []
        self._refresh_tokens: dict[str, str] = {}
        self._codes: dict[str, PendingCode] = {}
        self._otps: dict[str, tuple[str, PendingCode]] = {}

    def gateway(self) -> "SqlGateway":
        return SqlGateway(self)

    # ------------------------------------------------------------------ tokens

    def issue_access_token(self, account_id: str) -> tuple[str, datetime]:
        now = utcnow()
        expires_at = now + timedelta(minutes=self.settings.access_token_minutes)
        payload = {"sub": str(account_id), "role": "authenticated", "exp": expires_at, "iat": now}
        return jwt.encode(payload, self.jwt_secret, algorithm=ALGORITHM), expires_at

    def decode_access_token(self, token: str) -> str:
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[ALGORITHM])
        except ExpiredSignatureError as exc:
            raise AuthorizationError("JWT expired", code="PGRST301") from exc
        except JWTError as exc:
            raise AuthorizationError("Invalid token") from exc

        subject = payload.get("sub")
        if not subject or _as_uuid(subject) is None:
            raise AuthorizationError("Invalid token payload")
        return str(subject)

    def issue_refresh_token(self, account_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._refresh_tokens[token] = str(account_id)
        return token

    def redeem_refresh_token(self, token: str) -> str | None:
        """Rotate ``token``; each refresh token is usable once."""

        return self._refresh_tokens.pop(token, None)

    def revoke_refresh_token(self, token: str) -> None:
        self._refresh_tokens.pop(token, None)

    # ------------------------------------------------------------- auth codes

    def _new_code(self, account_id: UUID, kind: str) -> tuple[str, PendingCode]:
        pending = PendingCode(account_id=account_id, kind=kind, expires_at=utcnow() + CODE_TTL)
        code = secrets.token_urlsafe(24)
        self._codes[code] = pending
        return code, pending

    def send_code(self, email: str, kind: str, account_id: UUID, *, redirect_to: str | None = None) -> OutboxMessage:
        """Record a sign-up, magic-link or recovery email carrying both an OTP and a callback link."""

        code, pending = self._new_code(account_id, kind)
        token = f"{secrets.randbelow(10**6):06d}"
        self._otps[email] = (token, pending)
        query = urlencode({"code": code, "type": kind, "next": redirect_to or "/"})
        message = OutboxMessage(
            email=email,
            kind=kind,
            token=token,
            link=f"{self.site_url.rstrip('/')}/auth/callback?{query}",
        )
        self.outbox.append(message)
        logger.info("Queued %s email for %s", kind, email)
        return message

    def consume_code(self, code: str) -> PendingCode | None:
        pending = self._codes.pop(code, None)
        if pending is None or pending.expires_at <= utcnow():
            return None
        return pending

    def consume_otp(self, email: str, token: str) -> PendingCode | None:
        entry = self._otps.get(email)
        if entry is None:
            return None
        expected, pending = entry
        if not secrets.compare_digest(expected, str(token or "").strip()):
            return None
        self._otps.pop(email, None)
        if pending.expires_at <= utcnow():
            return None
        return pending

    def issue_provider_code(self, provider: str, email: str, metadata: Mapping[str, Any] | None = None) -> str:
        """Complete the provider's side of an OAuth flow and return the callback code."""

        normalized = (provider or "").strip().lower()
        if normalized not in self.enabled_providers:
            raise ValidationError("Unsupported provider: provider is not enabled")
        address = (email or "").strip().lower()
        with self.session_factory() as db:
            row = db.scalar(select(AccountRow).where(func.lower(AccountRow.email) == address))
            if row is None:
                row = AccountRow(email=address, provider=normalized, user_metadata={}, email_confirmed_at=utcnow())
                db.add(row)
            row.user_metadata = {**(row.user_metadata or {}), **dict(metadata or {})}
            db.commit()
            db.refresh(row)
            account_id = row.id
        code, _ = self._new_code(account_id, normalized)
        return code

    # ------------------------------------------------------- row-level policy

    def read_clause(self, table: str, uid: UUID | None):
        """SQL condition limiting ``table`` to rows ``uid`` may read, or ``None`` for public tables."""

        if table in PUBLIC_TABLES:
            return None
        if uid is None:
            return false()
        membership = aliased(ChatMember)
        member_chats = select(membership.chat_id).where(membership.user_id == uid)
        if table == "chats":
            return or_(Chat.id.in_(member_chats), Chat.created_by == uid)
        if table == "chat_members":
            created_chats = select(Chat.id).where(Chat.created_by == uid)
            return or_(
                ChatMember.chat_id.in_(member_chats),
                ChatMember.user_id == uid,
                ChatMember.chat_id.in_(created_chats),
            )
        if table == "messages":
            return Message.chat_id.in_(member_chats)
        if table == "notifications":
            return Notification.user_id == uid
        return false()

    def can_read(self, table: str, record: Mapping[str, Any], account_id: str | None) -> bool:
        if table in PUBLIC_TABLES:
            return True
        uid = _as_uuid(account_id)
        row_id = _as_uuid(record.get("id"))
        if uid is None or row_id is None:
            return False
        model = TABLES[table]
        with self.session_factory() as db:
            visible = db.scalar(
                select(func.count()).select_from(model).where(model.id == row_id, self.read_clause(table, uid))
            )
        return bool(visible)

    def _is_member(self, db: Session, chat_id: Any, uid: UUID) -> bool:
        chat_uuid = _as_uuid(chat_id)
        if chat_uuid is None:
            return False
        found = db.scalar(
            select(func.count())
            .select_from(ChatMember)
            .where(ChatMember.chat_id == chat_uuid, ChatMember.user_id == uid)
        )
        return bool(found)

    def _write_allowed(self, db: Session, table: str, kind: MutationKind, row: Mapping[str, Any], uid: UUID) -> bool:
        def owns(column: str) -> bool:
            return _as_uuid(row.get(column)) == uid

        if table == "profiles":
            return kind is not MutationKind.DELETE and owns("id")
        if table in {"posts", "comments"}:
            return owns("user_id")
        if table == "likes":
            return kind is not MutationKind.UPDATE and owns("user_id")
        if table == "chats":
            if kind is MutationKind.UPDATE:
                return owns("created_by") or self._is_member(db, row.get("id"), uid)
            return owns("created_by")
        if table == "chat_members":
            chat = db.get(Chat, _as_uuid(row.get("chat_id")))
            if chat is None:
                # Missing parent surfaces as a foreign key failure.
                return kind is MutationKind.INSERT
            creator = chat.created_by == uid
            if kind is MutationKind.INSERT:
                return creator or self._is_member(db, chat.id, uid)
            if kind is MutationKind.DELETE:
                return creator or owns("user_id")
            return False
        if table == "messages":
            if kind is MutationKind.INSERT:
                return owns("user_id") and self._is_member(db, row.get("chat_id"), uid)
            if kind is MutationKind.UPDATE:
                return owns("user_id")
            chat = db.get(Chat, _as_uuid(row.get("chat_id")))
            return owns("user_id") or (chat is not None and chat.created_by == uid)
        if table == "notifications":
            if kind is MutationKind.INSERT:
                return owns("from_user_id")
            return owns("user_id")
        return False

    def check_write(self, db: Session, table: str, kind: MutationKind, row: Mapping[str, Any], uid: UUID | None) -> None:
        if uid is None:
            raise AuthorizationError("Not signed in", code="42501")
        if not self._write_allowed(db, table, kind, row, uid):
            raise AuthorizationError(
                f'new row violates row-level security policy for table "{table}"',
                code="42501",
            )


class SqlGateway(Gateway):
    """One client's authenticated connection to a :class:`LocalBackend`."""

    def __init__(self, backend: LocalBackend) -> None:
        self.backend = backend
        self._auth = LocalAuthProvider(backend)

    @property
    def auth(self) -> LocalAuthProvider:
        return self._auth

    async def _suspend(self) -> None:
        await asyncio.sleep(self.backend.latency)

    def _viewer(self) -> UUID | None:
        token = self._auth.access_token
        if token is None:
            return None
        return UUID(self.backend.decode_access_token(token))

    @staticmethod
    def _model(table: str) -> type:
        try:
            return TABLES[table]
        except KeyError as exc:
            raise NotFoundError(f'relation "{table}" does not exist', code="42P01") from exc

    @staticmethod
    def _coerce(model: type, column_name: str, value: Any) -> Any:
        column = model.__table__.columns.get(column_name)
        if column is None:
            raise RemoteError(
                f"Could not find the '{column_name}' column of '{model.__tablename__}'",
                code="PGRST204",
            )
        if value is None:
            return None
        if isinstance(column.type, PG_UUID) and not isinstance(value, UUID):
            coerced = _as_uuid(value)
            if coerced is None:
                raise RemoteError(f'invalid input syntax for type uuid: "{value}"', code="22P02")
            return coerced
        if isinstance(column.type, DateTime) and isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError as exc:
                raise RemoteError(f'invalid input syntax for type timestamp: "{value}"', code="22007") from exc
        return value

    def _values(self, model: type, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {key: self._coerce(model, key, value) for key, value in payload.items()}

    def _clause(self, model: type, item: Filter):
        column = getattr(model, item.column, None)
        if column is None or item.column not in model.__table__.columns:
            raise RemoteError(f"column {model.__tablename__}.{item.column} does not exist", code="42703")
        if item.op is FilterOp.IS:
            return column.is_(item.value)
        if item.op is FilterOp.ILIKE:
            return column.ilike(str(item.value))
        if item.op in (FilterOp.IN, FilterOp.NOT_IN):
            values = [self._coerce(model, item.column, value) for value in item.value]
            return column.in_(values) if item.op is FilterOp.IN else column.not_in(values)

        value = self._coerce(model, item.column, item.value)
        if item.op is FilterOp.EQ:
            return column.is_(None) if value is None else column == value
        if item.op is FilterOp.NEQ:
            return column.is_not(None) if value is None else column != value
        if item.op is FilterOp.GT:
            return column > value
        if item.op is FilterOp.GTE:
            return column >= value
        if item.op is FilterOp.LT:
            return column < value
        return column <= value

    def _where(self, table: str, model: type, filters: Sequence[Filter], uid: UUID | None) -> list:
        clauses = [self._clause(model, item) for item in filters]
        policy = self.backend.read_clause(table, uid)
        if policy is not None:
            clauses.append(policy)
        return clauses

    def _embed(self, db: Session, record: Mapping[str, Any], relation: Related, uid: UUID | None) -> Any:
        model = self._model(relation.table)
        key = record.get(relation.local_key)
        if key is None:
            if relation.count:
                return 0
            return [] if relation.many else None
        clauses = self._where(relation.table, model, (eq(relation.remote_key, key), *relation.filters), uid)
        if relation.count:
            return db.scalar(select(func.count()).select_from(model).where(*clauses)) or 0
        stmt = select(model).where(*clauses)
        if relation.many:
            rows = db.scalars(stmt.order_by(model.created_at.asc())).all()
            return [_select_columns(to_record(row), relation.columns) for row in rows]
        row = db.scalars(stmt.limit(1)).first()
        return _select_columns(to_record(row), relation.columns) if row is not None else None

    def _translate(self, exc: SQLAlchemyError) -> RemoteError:
        if isinstance(exc, IntegrityError):
            detail = str(exc.orig).lower()
            if "foreign key" in detail:
                return NotFoundError("Referenced row does not exist", code="23503")
            if "not null" in detail:
                return RemoteError("A required column is missing", code="23502")
            return ConflictError("duplicate key value violates unique constraint", code="23505")
        if isinstance(exc, OperationalError):
            logger.exception("Local database unavailable")
            return NetworkError("Database unavailable")
        logger.exception("Unexpected database error")
        return RemoteError("Database error")

    async def query(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: Sequence[str] | None = None,
        related: RelatedMap | None = None,
        order: Order | Sequence[Order] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        await self._suspend()
        model = self._model(table)
        uid = self._viewer()
        try:
            with self.backend.session_factory() as db:
                stmt = select(model).where(*self._where(table, model, filters, uid))
                for item in normalize_order(order):
                    column = getattr(model, item.column)
                    stmt = stmt.order_by(column.asc() if item.ascending else column.desc())
                if limit is not None:
                    stmt = stmt.limit(limit)
                results = []
                for row in db.scalars(stmt).all():
                    record = to_record(row)
                    projected = _select_columns(record, columns)
                    for alias, relation in (related or {}).items():
                        projected[alias] = self._embed(db, record, relation, uid)
                    results.append(projected)
                return results
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        await self._suspend()
        model = self._model(table)
        uid = self._viewer()
        try:
            with self.backend.session_factory() as db:
                stmt = select(func.count()).select_from(model).where(*self._where(table, model, filters, uid))
                return int(db.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    async def mutate(
        self,
        table: str,
        kind: MutationKind,
        payload: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None,
        *,
        filters: Sequence[Filter] = (),
    ) -> list[dict[str, Any]]:
        await self._suspend()
        kind = MutationKind(kind)
        model = self._model(table)
        uid = self._viewer()
        events: list[ChangeEvent] = []
        records: list[dict[str, Any]] = []

        with self.backend.session_factory() as db:
            try:
                if kind is MutationKind.INSERT:
                    rows = [payload] if isinstance(payload, Mapping) else list(payload or [])
                    created = []
                    for values in rows:
                        clean = self._values(model, values)
                        self.backend.check_write(db, table, kind, clean, uid)
                        obj = model(**clean)
                        db.add(obj)
                        db.flush()
                        created.append(obj)
                    records = [to_record(obj) for obj in created]
                    events = [ChangeEvent(table, ChangeKind.INSERT, record) for record in records]
                else:
                    if not filters:
                        raise RemoteError(f"{kind.value.upper()} requires a WHERE clause", code="21000")
                    targets = db.scalars(select(model).where(*self._where(table, model, filters, uid))).all()
                    changes = self._values(model, payload or {}) if kind is MutationKind.UPDATE else {}
                    for obj in targets:
                        old = to_record(obj)
                        self.backend.check_write(db, table, kind, {**old}, uid)
                        if kind is MutationKind.UPDATE:
                            self.backend.check_write(db, table, kind, {**old, **changes}, uid)
                            for key, value in changes.items():
                                setattr(obj, key, value)
                            db.flush()
                            record = to_record(obj)
                            events.append(ChangeEvent(table, ChangeKind.UPDATE, record, old=old))
                        else:
                            db.delete(obj)
                            db.flush()
                            record = old
                            events.append(ChangeEvent(table, ChangeKind.DELETE, old, old=old))
                        records.append(record)
                db.commit()
            except SyncError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                raise self._translate(exc) from exc

        for event in events:
            self.backend.feed.publish(event)
        logger.debug("%s on %s affected %d row(s)", kind.value, table, len(records))
        return records

    async def subscribe(self, table: str, *, filters: Sequence[Filter] = ()) -> Subscription[ChangeEvent]:
        await self._suspend()
        self._model(table)
        return self.backend.feed.subscribe(table, filters, reader=lambda: self._auth.account_id)

    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        await self._suspend()
        uid = self._viewer()
        if uid is None:
            raise AuthorizationError("Not signed in", code="42501")
        if not path.startswith(f"{uid}/"):
            raise AuthorizationError("Uploads must be placed under the uploader's folder", code="42501")
        return await self.backend.storage.put(bucket, path, data, content_type=content_type)

    async def aclose(self) -> None:
        session = self._auth.current_session
        if session is not None:
            self.backend.revoke_refresh_token(session.refresh_token)


__all__ = ["LocalBackend", "OutboxMessage", "PendingCode", "SqlGateway", "TABLES", "to_record"]
