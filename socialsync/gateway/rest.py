"""Gateway for a hosted PostgREST/GoTrue-style backend, spoken over httpx.

Realtime changes are read from a server-sent-events endpoint,
``/realtime/v1/sse/{table}``, that accepts the same filter parameters as the
REST surface and emits one JSON change payload per ``data:`` line.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence
from uuid import UUID

import httpx

from ..errors import (
    AuthorizationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RemoteError,
    SyncError,
    ValidationError,
)
from ..schemas.events import ChangeEvent, ChangeKind
from ..schemas.profiles import Account
from ..streams import Subscription
from .auth import AuthEventKind, AuthProvider, AuthSession
from .base import Filter, FilterOp, Gateway, MutationKind, Order, RelatedMap, normalize_order

logger = logging.getLogger(__name__)

_METHODS = {
    MutationKind.INSERT: "POST",
    MutationKind.UPDATE: "PATCH",
    MutationKind.DELETE: "DELETE",
}


def error_from_response(response: httpx.Response) -> SyncError:
    """Translate an error response from any backend surface into the error taxonomy."""

    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    message = (
        payload.get("message")
        or payload.get("msg")
        or payload.get("error_description")
        or payload.get("error")
        or (response.text or "").strip()
        or None
    )
    code = payload.get("code") or payload.get("error_code")
    code = str(code) if code is not None else None
    status_code = response.status_code

    if message and "provider is not enabled" in message:
        return ValidationError(message, code=code)
    if status_code in (401, 403) or code == "42501":
        return AuthorizationError(message, code=code)
    if status_code == 404 or code in ("PGRST116", "23503", "42P01"):
        return NotFoundError(message, code=code)
    if status_code == 409 or code == "23505":
        return ConflictError(message, code=code)
    if status_code >= 500:
        return NetworkError(message, code=code)
    return RemoteError(message, code=code)


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return str(value)


def _list_literal(values: Sequence[Any]) -> str:
    items = []
    for value in values:
        text = _literal(value)
        if any(char in text for char in ',()"'):
            text = '"' + text.replace('"', '\\"') + '"'
        items.append(text)
    return "(" + ",".join(items) + ")"


def encode_filter(item: Filter, prefix: str = "") -> tuple[str, str]:
    """Render one filter as a PostgREST ``column=op.value`` query parameter."""

    key = f"{prefix}{item.column}"
    if item.op is FilterOp.IN:
        return key, f"in.{_list_literal(item.value)}"
    if item.op is FilterOp.NOT_IN:
        return key, f"not.in.{_list_literal(item.value)}"
    if item.op is FilterOp.ILIKE:
        return key, f"ilike.{str(item.value).replace('%', '*')}"
    return key, f"{item.op.value}.{_literal(item.value)}"


def encode_select(columns: Sequence[str] | None, related: RelatedMap | None) -> str:
    parts = list(columns) if columns else ["*"]
    for alias, relation in (related or {}).items():
        if relation.count:
            inner = "count"
        else:
            inner = ",".join(relation.columns) or "*"
        target = relation.table if relation.many else f"{relation.table}!{relation.local_key}"
        parts.append(f"{alias}:{target}({inner})")
    return ",".join(parts)


def encode_order(order: Order | Sequence[Order] | None) -> str | None:
    items = normalize_order(order)
    if not items:
        return None
    return ",".join(f"{item.column}.{'asc' if item.ascending else 'desc'}" for item in items)


def _unwrap_counts(row: dict[str, Any], related: RelatedMap | None) -> dict[str, Any]:
    for alias, relation in (related or {}).items():
        if not relation.count:
            continue
        value = row.get(alias)
        if isinstance(value, list):
            row[alias] = int(value[0].get("count", 0)) if value else 0
        elif isinstance(value, dict):
            row[alias] = int(value.get("count", 0))
        else:
            row[alias] = int(value or 0)
    return row


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_change(payload: Mapping[str, Any]) -> ChangeEvent:
    kind = ChangeKind(str(payload.get("type") or payload.get("eventType")).upper())
    old = payload.get("old_record") or payload.get("old") or None
    record = payload.get("record") or payload.get("new") or {}
    if kind is ChangeKind.DELETE:
        record = old or record
    return ChangeEvent(
        table=str(payload.get("table")),
        kind=kind,
        record=dict(record),
        old=dict(old) if old else None,
        commit_timestamp=_parse_timestamp(payload.get("commit_timestamp")) or datetime.now(timezone.utc),
    )


class RestAuthProvider(AuthProvider):
    """GoTrue-style auth endpoints under ``/auth/v1``."""

    def __init__(self, client: httpx.AsyncClient, *, anon_key: str, site_url: str) -> None:
        super().__init__()
        self._client = client
        self._anon_key = anon_key
        self._site_url = site_url
        self._code_verifier: str | None = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        headers = {"apikey": self._anon_key, "Authorization": f"Bearer {token or self._anon_key}"}
        try:
            response = await self._client.request(method, f"/auth/v1{path}", json=json_body, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.exception("Auth request %s %s failed", method, path)
            raise NetworkError("Could not reach the auth service") from exc
        if response.is_error:
            raise error_from_response(response)
        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _account(data: Mapping[str, Any]) -> Account:
        return Account(
            id=data.get("id"),
            email=data.get("email"),
            user_metadata=data.get("user_metadata") or {},
            last_sign_in_at=_parse_timestamp(data.get("last_sign_in_at")),
            created_at=_parse_timestamp(data.get("created_at")),
        )

    def _session_from(self, data: Mapping[str, Any]) -> AuthSession:
        expires_at = None
        if data.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
        elif data.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))
        return AuthSession(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
            account=self._account(data.get("user") or {}),
        )

    def _signed_in(self, data: Mapping[str, Any], kind: AuthEventKind = AuthEventKind.SIGNED_IN) -> AuthSession:
        session = self._session_from(data)
        self._set_session(kind, session)
        return session

    async def sign_up(
        self, email: str, password: str, *, metadata: dict[str, Any] | None = None, redirect_to: str | None = None
    ) -> AuthSession | None:
        data = await self._request(
            "POST",
            "/signup",
            json_body={"email": email, "password": password, "data": metadata or {}},
            params={"redirect_to": redirect_to} if redirect_to else None,
        )
        if not data.get("access_token"):
            return None
        return self._signed_in(data)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = await self._request(
            "POST", "/token", params={"grant_type": "password"}, json_body={"email": email, "password": password}
        )
        return self._signed_in(data)

    async def sign_in_with_provider(self, provider: str, *, redirect_to: str | None = None) -> str:
        normalized = (provider or "").strip().lower()
        settings = await self._request("GET", "/settings")
        if not (settings.get("external") or {}).get(normalized):
            raise ValidationError("Unsupported provider: provider is not enabled")
        self._code_verifier = secrets.token_urlsafe(64)
        digest = hashlib.sha256(self._code_verifier.encode("ascii")).digest()
        challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        request = self._client.build_request(
            "GET",
            "/auth/v1/authorize",
            params={
                "provider": normalized,
                "redirect_to": redirect_to or self._site_url,
                "code_challenge": challenge,
                "code_challenge_method": "s256",
            },
        )
        return str(request.url)

    async def exchange_code_for_session(self, code: str) -> AuthSession:
        data = await self._request(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json_body={"auth_code": code, "code_verifier": self._code_verifier or ""},
        )
        self._code_verifier = None
        return self._signed_in(data)

    async def request_magic_link(self, email: str, *, redirect_to: str | None = None) -> None:
        await self._request(
            "POST",
            "/otp",
            json_body={"email": email, "create_user": True},
            params={"redirect_to": redirect_to} if redirect_to else None,
        )

    async def verify_otp(self, email: str, token: str, *, kind: str = "email") -> AuthSession:
        data = await self._request("POST", "/verify", json_body={"type": kind, "email": email, "token": token})
        session = self._signed_in(data)
        if kind == "recovery":
            self._set_session(AuthEventKind.PASSWORD_RECOVERY, session)
        return session

    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        await self._request(
            "POST",
            "/recover",
            json_body={"email": email},
            params={"redirect_to": redirect_to} if redirect_to else None,
        )

    async def update_password(self, new_password: str) -> Account:
        session = self.current_session
        if session is None:
            raise AuthorizationError("Auth session missing")
        data = await self._request("PUT", "/user", json_body={"password": new_password}, token=session.access_token)
        account = self._account(data)
        self._set_session(
            AuthEventKind.USER_UPDATED,
            AuthSession(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                expires_at=session.expires_at,
                account=account,
            ),
        )
        return account

    async def refresh_session(self) -> AuthSession:
        session = self.current_session
        if session is None:
            raise AuthorizationError("Auth session missing")
        try:
            data = await self._request(
                "POST",
                "/token",
                params={"grant_type": "refresh_token"},
                json_body={"refresh_token": session.refresh_token},
            )
        except NetworkError:
            raise
        except RemoteError as exc:
            self._set_session(AuthEventKind.SIGNED_OUT, None)
            raise AuthorizationError(exc.message, code=exc.code) from exc
        return self._signed_in(data, AuthEventKind.TOKEN_REFRESHED)

    async def sign_out(self) -> None:
        session = self.current_session
        if session is not None:
            try:
                await self._request("POST", "/logout", token=session.access_token)
            except RemoteError as exc:
                logger.warning("Remote sign-out failed: %s", exc.message)
        self._set_session(AuthEventKind.SIGNED_OUT, None)


class RestGateway(Gateway):
    """Query/mutate against ``/rest/v1``, upload to ``/storage/v1`` and stream realtime changes."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        site_url: str = "http://localhost:3000",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"apikey": anon_key},
        )
        self._auth = RestAuthProvider(self._client, anon_key=anon_key, site_url=site_url)
        self._pumps: set[asyncio.Task] = set()

    @property
    def auth(self) -> RestAuthProvider:
        return self._auth

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._auth.access_token or self._anon_key}"}
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.exception("Request %s %s failed", method, url)
            raise NetworkError() from exc
        if response.is_error:
            raise error_from_response(response)
        return response

    @staticmethod
    def _params(filters: Sequence[Filter]) -> list[tuple[str, str]]:
        return [encode_filter(item) for item in filters]

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
        params = [("select", encode_select(columns, related))]
        params.extend(self._params(filters))
        for alias, relation in (related or {}).items():
            params.extend(encode_filter(item, prefix=f"{alias}.") for item in relation.filters)
        ordering = encode_order(order)
        if ordering:
            params.append(("order", ordering))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._send("GET", f"/rest/v1/{table}", params=params, headers=self._headers())
        rows = response.json() or []
        return [_unwrap_counts(dict(row), related) for row in rows]

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        params = [("select", "*"), *self._params(filters)]
        response = await self._send("HEAD", f"/rest/v1/{table}", params=params, headers=self._headers("count=exact"))
        content_range = response.headers.get("content-range", "")
        _, _, total = content_range.partition("/")
        try:
            return int(total)
        except ValueError as exc:
            raise RemoteError("Count was not reported by the server") from exc

    async def mutate(
        self,
        table: str,
        kind: MutationKind,
        payload: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None,
        *,
        filters: Sequence[Filter] = (),
    ) -> list[dict[str, Any]]:
        kind = MutationKind(kind)
        if kind is not MutationKind.INSERT and not filters:
            raise RemoteError(f"{kind.value.upper()} requires a WHERE clause", code="21000")
        body: Any = None
        if kind is MutationKind.INSERT:
            body = dict(payload) if isinstance(payload, Mapping) else [dict(item) for item in payload or []]
        elif kind is MutationKind.UPDATE:
            body = dict(payload or {})
        response = await self._send(
            _METHODS[kind],
            f"/rest/v1/{table}",
            params=self._params(filters),
            headers={**self._headers("return=representation"), "Content-Type": "application/json"},
            content=json.dumps(body, default=_literal) if body is not None else None,
        )
        if not response.content:
            return []
        data = response.json()
        return list(data) if isinstance(data, list) else [data]

    async def subscribe(self, table: str, *, filters: Sequence[Filter] = ()) -> Subscription[ChangeEvent]:
        pump: dict[str, asyncio.Task] = {}

        def _stop(_subscription: Subscription[ChangeEvent]) -> None:
            task = pump.get("task")
            if task is not None and not task.done():
                task.cancel()

        subscription: Subscription[ChangeEvent] = Subscription(_stop)
        task = asyncio.create_task(self._pump(table, list(filters), subscription))
        pump["task"] = task
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)
        return subscription

    async def _pump(self, table: str, filters: list[Filter], subscription: Subscription[ChangeEvent]) -> None:
        headers = {**self._headers(), "Accept": "text/event-stream"}
        try:
            async with self._client.stream(
                "GET",
                f"/realtime/v1/sse/{table}",
                params=self._params(filters),
                headers=headers,
                timeout=httpx.Timeout(None, connect=self._client.timeout.connect),
            ) as response:
                if response.is_error:
                    await response.aread()
                    subscription.fail(error_from_response(response))
                    return
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data:
                        continue
                    try:
                        subscription.push(parse_change(json.loads(data)))
                    except (ValueError, KeyError) as exc:
                        logger.warning("Skipping malformed change payload on %s: %s", table, exc)
            subscription.fail(NetworkError("Realtime connection closed"))
        except httpx.HTTPError as exc:
            logger.warning("Realtime stream for %s failed: %s", table, type(exc).__name__)
            subscription.fail(NetworkError("Realtime connection lost"))

    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        key = path.lstrip("/")
        headers = {**self._headers(), "Content-Type": content_type, "x-upsert": "false"}
        await self._send("POST", f"/storage/v1/object/{bucket}/{key}", content=data, headers=headers)
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{key}"

    async def aclose(self) -> None:
        for task in list(self._pumps):
            task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        await self._client.aclose()


__all__ = [
    "RestAuthProvider",
    "RestGateway",
    "encode_filter",
    "encode_order",
    "encode_select",
    "error_from_response",
    "parse_change",
]
