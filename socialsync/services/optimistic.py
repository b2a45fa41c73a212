"""Optimistic apply, remote write, then reconcile or roll back."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Hashable, Mapping, TypeVar
from uuid import uuid4

from ..errors import NotFoundError, SyncError
from ..schemas.base import Record
from ..schemas.events import ChangeKind
from .cache import EntityCache

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

PROVISIONAL_PREFIX = "local-"
SETTLED_LIMIT = 512

Fingerprint = Callable[[Mapping[str, Any]], tuple]

DEFAULT_FINGERPRINTS: dict[str, Fingerprint] = {
    "posts": lambda row: (row.get("user_id"), row.get("content")),
    "comments": lambda row: (row.get("post_id"), row.get("user_id"), row.get("content")),
    "likes": lambda row: (row.get("post_id"), row.get("user_id")),
    "messages": lambda row: (row.get("chat_id"), row.get("user_id"), row.get("content")),
    "chat_members": lambda row: (row.get("chat_id"), row.get("user_id")),
    "notifications": lambda row: (row.get("user_id"), row.get("type"), row.get("related_id")),
}


def provisional_id() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid4().hex}"


def is_provisional(record_id: str | None) -> bool:
    return bool(record_id) and str(record_id).startswith(PROVISIONAL_PREFIX)


@dataclass
class ActionResult(Generic[R]):
    """Outcome of a user action, for UI feedback."""

    ok: bool
    error: str | None = None
    record: Any = None

    @classmethod
    def success(cls, record: Any = None) -> "ActionResult":
        return cls(ok=True, record=record)

    @classmethod
    def failure(cls, error: str | SyncError) -> "ActionResult":
        message = error.message if isinstance(error, SyncError) else str(error)
        return cls(ok=False, error=message)


@dataclass(eq=False)
class PendingWrite:
    """A remote write this client has issued and may still see echoed back as a change event."""

    table: str
    kind: ChangeKind
    fingerprint: tuple | None
    provisional_id: str | None = None
    cache: EntityCache | None = None
    authoritative_id: str | None = None
    echoed: bool = field(default=False)


class MutationEngine:
    """Shared rollback and reconciliation rules for every user-initiated write.

    Writes are tracked from the moment they are issued so the router can tell a
    change event caused by this client (before or after the write returns) from
    a change made elsewhere.
    """

    def __init__(self, fingerprints: Mapping[str, Fingerprint] | None = None) -> None:
        self._fingerprints = {**DEFAULT_FINGERPRINTS, **(fingerprints or {})}
        self._in_flight: dict[str, list[PendingWrite]] = {}
        self._settled: OrderedDict[tuple[str, ChangeKind, str], PendingWrite] = OrderedDict()
        self._locks: dict[Hashable, tuple[asyncio.Lock, int]] = {}
        self._background: set[asyncio.Task] = set()

    # ---------------------------------------------------------------- tracking

    def fingerprint(self, table: str, row: Mapping[str, Any]) -> tuple | None:
        make = self._fingerprints.get(table)
        if make is None:
            return None
        return tuple(str(part) if part is not None else None for part in make(row))

    def track(
        self,
        table: str,
        kind: ChangeKind,
        row: Mapping[str, Any],
        *,
        provisional_id: str | None = None,
        cache: EntityCache | None = None,
    ) -> PendingWrite:
        pending = PendingWrite(
            table=table,
            kind=ChangeKind(kind),
            fingerprint=self.fingerprint(table, row),
            provisional_id=provisional_id,
            cache=cache,
        )
        self._in_flight.setdefault(table, []).append(pending)
        return pending

    def _drop(self, pending: PendingWrite) -> None:
        entries = self._in_flight.get(pending.table)
        if entries and pending in entries:
            entries.remove(pending)
            if not entries:
                self._in_flight.pop(pending.table, None)

    def settle(self, pending: PendingWrite, record_id: str | None) -> None:
        """The write succeeded; remember its id until the matching event is seen."""

        self._drop(pending)
        if record_id is None:
            return
        pending.authoritative_id = str(record_id)
        if pending.echoed:
            return
        self._settled[(pending.table, pending.kind, pending.authoritative_id)] = pending
        while len(self._settled) > SETTLED_LIMIT:
            self._settled.popitem(last=False)

    def abandon(self, pending: PendingWrite) -> None:
        self._drop(pending)

    def claim(
        self,
        table: str,
        kind: ChangeKind,
        row: Mapping[str, Any],
        *,
        cache: EntityCache | None = None,
    ) -> PendingWrite | None:
        """Return the local write that ``row`` echoes, if any; each write is claimed once.

        With ``cache`` only writes applied to that cache are considered.
        """

        kind = ChangeKind(kind)
        record_id = str(row.get("id")) if row.get("id") is not None else None
        if record_id is not None:
            key = (table, kind, record_id)
            settled = self._settled.get(key)
            if settled is not None and (cache is None or settled.cache is cache):
                del self._settled[key]
                settled.echoed = True
                return settled
        fingerprint = self.fingerprint(table, row)
        for pending in self._in_flight.get(table, ()):
            if pending.kind is not kind or pending.echoed:
                continue
            if cache is not None and pending.cache is not cache:
                continue
            if record_id is not None and pending.authoritative_id == record_id:
                pending.echoed = True
                return pending
            if fingerprint is not None and pending.authoritative_id is None and pending.fingerprint == fingerprint:
                pending.authoritative_id = record_id
                pending.echoed = True
                return pending
        return None

    def in_flight(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._in_flight.get(table, ()))
        return sum(len(entries) for entries in self._in_flight.values())

    # ------------------------------------------------------------------ locks

    @asynccontextmanager
    async def serialized(self, key: Hashable | None) -> AsyncIterator[None]:
        """Run the block after every earlier block on ``key`` (e.g. toggles of one post's like).

        The lock for ``key`` is dropped once nothing holds or waits for it.
        """

        if key is None:
            yield
            return
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            current, remaining = self._locks.get(key, (None, 0))
            if current is lock:
                if remaining > 1:
                    self._locks[key] = (lock, remaining - 1)
                else:
                    del self._locks[key]

    def lock_count(self) -> int:
        return len(self._locks)

    # ---------------------------------------------------------------- actions

    @staticmethod
    def reconcile(cache: EntityCache[R], provisional: str | None, record: R) -> R | None:
        """Swap a provisional entry for the authoritative record; repeating it changes nothing."""

        if provisional is not None and provisional != record.id:
            cache.clear_pending(provisional)
            cache.remove(provisional)
        return cache.upsert(record)

    async def insert(
        self,
        cache: EntityCache[R],
        provisional: R,
        write: Callable[[], Awaitable[R]],
        *,
        table: str,
        action: str,
        row: Mapping[str, Any] | None = None,
    ) -> ActionResult[R]:
        pending = self.track(
            table,
            ChangeKind.INSERT,
            row if row is not None else provisional.model_dump(),
            provisional_id=provisional.id,
            cache=cache,
        )
        cache.upsert(provisional)
        cache.mark_pending(provisional.id)
        try:
            record = await write()
        except SyncError as exc:
            self.abandon(pending)
            cache.remove(provisional.id)
            logger.info("Rolled back %s: %s", action, exc.message)
            return ActionResult.failure(exc)
        self.settle(pending, record.id)
        self.reconcile(cache, provisional.id, record)
        return ActionResult.success(record)

    async def patch(
        self,
        cache: EntityCache[R],
        record_id: str,
        apply: Callable[[R], R],
        write: Callable[[], Awaitable[Any]],
        *,
        action: str,
        revert: Callable[[R], R] | None = None,
    ) -> ActionResult:
        """Change an existing entry in place; ``revert`` undoes ``apply`` on failure.

        Without ``revert`` the entry is restored from its snapshot.
        """

        before = cache.get(record_id)
        if before is not None:
            cache.update(record_id, apply)
            cache.mark_pending(record_id)
        try:
            result = await write()
        except SyncError as exc:
            if before is not None:
                cache.clear_pending(record_id)
                if revert is not None:
                    cache.update(record_id, revert)
                else:
                    cache.upsert(before)
            logger.info("Rolled back %s: %s", action, exc.message)
            return ActionResult.failure(exc)
        cache.clear_pending(record_id)
        if isinstance(result, Record) and result.id == record_id:
            cache.upsert(result)
        return ActionResult.success(result)

    async def remove(
        self,
        cache: EntityCache[R],
        record_id: str,
        write: Callable[[], Awaitable[Any]],
        *,
        action: str,
    ) -> ActionResult:
        before = cache.remove(record_id)
        try:
            result = await write()
        except SyncError as exc:
            if before is not None:
                cache.upsert(before)
            logger.info("Rolled back %s: %s", action, exc.message)
            return ActionResult.failure(exc)
        if isinstance(result, list) and not result and before is not None:
            # Nothing matched remotely: the row is gone or was never ours to delete.
            cache.upsert(before)
            return ActionResult.failure(NotFoundError())
        return ActionResult.success(before)

    # ------------------------------------------------------- side mutations

    def fire_and_forget(self, make: Callable[[], Awaitable[Any]], *, action: str) -> asyncio.Task:
        """Run a best-effort side write; failures are logged and never roll back anything."""

        async def _run() -> None:
            try:
                await make()
            except SyncError as exc:
                logger.warning("%s failed: %s", action, exc.message)

        task = asyncio.create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for every side write started so far."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def reset(self) -> None:
        """Forget all tracked writes and cancel side writes of the ending session."""

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._in_flight.clear()
        self._settled.clear()
        self._locks.clear()


__all__ = [
    "ActionResult",
    "MutationEngine",
    "PendingWrite",
    "is_provisional",
    "provisional_id",
]
