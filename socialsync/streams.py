"""Cancellable in-process event streams.

An :class:`EventStream` has one producer and any number of consumers. Each
consumer holds a :class:`Subscription`, an async iterator backed by its own
queue. Cancelling a subscription is immediate: items still queued are never
delivered afterwards.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")

_ITEM = "item"
_ERROR = "error"
_CLOSED = "closed"


class Subscription(Generic[T]):
    """Consumer side of a stream."""

    def __init__(self, on_cancel: Callable[["Subscription[T]"], None] | None = None) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._closed = False
        self._on_cancel = on_cancel

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return 0 if self._closed else self._queue.qsize()

    def push(self, item: T) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait((_ITEM, item))
        return True

    def fail(self, exc: BaseException) -> None:
        """Terminate the stream; the consumer sees ``exc`` after already queued items."""

        if self._closed:
            return
        self._queue.put_nowait((_ERROR, exc))

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait((_CLOSED, None))
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        kind, payload = await self._queue.get()
        if self._closed or kind == _CLOSED:
            raise StopAsyncIteration
        if kind == _ERROR:
            self.cancel()
            raise payload
        return payload


class EventStream(Generic[T]):
    """Single-producer, multi-consumer broadcast."""

    def __init__(self) -> None:
        self._subscribers: set[Subscription[T]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self._discard)
        self._subscribers.add(subscription)
        return subscription

    def publish(self, item: T) -> int:
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.push(item):
                delivered += 1
        return delivered

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.cancel()
        self._subscribers.clear()

    def _discard(self, subscription: Subscription[T]) -> None:
        self._subscribers.discard(subscription)


__all__ = ["EventStream", "Subscription"]
