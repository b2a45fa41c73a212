"""Typed query/mutate/subscribe interface to the backend."""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Mapping, Sequence
from uuid import UUID

from ..errors import NotFoundError
from ..schemas.base import as_utc
from ..schemas.events import ChangeEvent
from ..streams import Subscription

if TYPE_CHECKING:
    from .auth import AuthProvider


class FilterOp(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    ILIKE = "ilike"
    IS = "is"


class MutationKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def normalize_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def _as_datetime(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return value
    return normalize_value(value)


def _ilike_pattern(pattern: str) -> re.Pattern[str]:
    parts = [re.escape(chunk) for chunk in str(pattern).split("%")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class Filter:
    column: str
    op: FilterOp
    value: Any

    def matches(self, record: Mapping[str, Any]) -> bool:
        """Evaluate the filter against a plain record (used for realtime delivery)."""

        actual = normalize_value(record.get(self.column))
        expected = normalize_value(self.value)
        if self.op is FilterOp.EQ:
            return actual == expected
        if self.op is FilterOp.NEQ:
            return actual != expected
        if self.op is FilterOp.IN:
            return actual in {normalize_value(v) for v in expected}
        if self.op is FilterOp.NOT_IN:
            return actual not in {normalize_value(v) for v in expected}
        if self.op is FilterOp.IS:
            return actual is expected
        if self.op is FilterOp.ILIKE:
            return actual is not None and bool(_ilike_pattern(expected).match(str(actual)))
        if actual is None or expected is None:
            return False
        left, right = _as_datetime(actual), _as_datetime(expected)
        try:
            if self.op is FilterOp.GT:
                return left > right
            if self.op is FilterOp.GTE:
                return left >= right
            if self.op is FilterOp.LT:
                return left < right
            return left <= right
        except TypeError:
            return False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.EQ, value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.NEQ, value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.GT, value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.GTE, value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.LT, value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, FilterOp.LTE, value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, FilterOp.IN, tuple(values))


def not_in(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, FilterOp.NOT_IN, tuple(values))


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, FilterOp.ILIKE, pattern)


def is_(column: str, value: bool | None) -> Filter:
    return Filter(column, FilterOp.IS, value)


def matches_all(filters: Sequence[Filter], record: Mapping[str, Any]) -> bool:
    return all(item.matches(record) for item in filters)


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


def asc(column: str) -> Order:
    return Order(column, True)


def desc(column: str) -> Order:
    return Order(column, False)


@dataclass(frozen=True)
class Related:
    """Relational projection fetched in the same call as the parent rows.

    ``many=False`` embeds the single row of ``table`` whose ``remote_key`` equals
    the parent's ``local_key``. ``many=True`` embeds the list of child rows;
    with ``count=True`` only their number is embedded.
    """

    table: str
    local_key: str
    remote_key: str = "id"
    columns: tuple[str, ...] = ()
    many: bool = False
    count: bool = False
    filters: tuple[Filter, ...] = ()


RelatedMap = Mapping[str, Related]


class Gateway(ABC):
    """Query, mutate, count, subscribe and upload against the backend.

    The gateway neither caches nor retries; every method may raise a
    :class:`~socialsync.errors.RemoteError` subclass.
    """

    @property
    @abstractmethod
    def auth(self) -> "AuthProvider":
        """The auth surface of the same backend."""

    @abstractmethod
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
        ...

    async def query_one(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: Sequence[str] | None = None,
        related: RelatedMap | None = None,
        order: Order | Sequence[Order] | None = None,
    ) -> dict[str, Any]:
        rows = await self.query(table, filters=filters, columns=columns, related=related, order=order, limit=1)
        if not rows:
            raise NotFoundError(f"No matching row in {table}")
        return rows[0]

    @abstractmethod
    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        ...

    @abstractmethod
    async def mutate(
        self,
        table: str,
        kind: MutationKind,
        payload: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None,
        *,
        filters: Sequence[Filter] = (),
    ) -> list[dict[str, Any]]:
        """Apply one mutation and return the affected rows."""

    async def insert(self, table: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        rows = await self.mutate(table, MutationKind.INSERT, payload)
        if not rows:
            raise NotFoundError(f"Insert into {table} returned no row")
        return rows[0]

    async def insert_many(self, table: str, payload: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        return await self.mutate(table, MutationKind.INSERT, list(payload))

    async def update(
        self, table: str, values: Mapping[str, Any], *, filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        return await self.mutate(table, MutationKind.UPDATE, values, filters=filters)

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[dict[str, Any]]:
        return await self.mutate(table, MutationKind.DELETE, filters=filters)

    @abstractmethod
    async def subscribe(self, table: str, *, filters: Sequence[Filter] = ()) -> Subscription[ChangeEvent]:
        """Open a cancellable stream of change events for ``table``."""

    @abstractmethod
    async def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        """Store ``data`` and return its public URL."""

    async def aclose(self) -> None:
        return None


def normalize_order(order: Order | Sequence[Order] | None) -> list[Order]:
    if order is None:
        return []
    if isinstance(order, Order):
        return [order]
    return list(order)


__all__ = [
    "Filter",
    "FilterOp",
    "Gateway",
    "MutationKind",
    "Order",
    "Related",
    "RelatedMap",
    "asc",
    "desc",
    "eq",
    "gt",
    "gte",
    "ilike",
    "in_",
    "is_",
    "lt",
    "lte",
    "matches_all",
    "neq",
    "normalize_order",
    "normalize_value",
    "not_in",
]
