"""Route realtime change events from gateway subscriptions into open views."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from ..config import Settings, get_settings
from ..errors import RemoteError
from ..gateway.base import Filter, Gateway
from ..schemas.events import ChangeEvent
from ..streams import Subscription

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
DegradedHandler = Callable[[], None]
ResumedHandler = Callable[[], Awaitable[None]]

DEGRADED_MESSAGE = "Live updates unavailable"


@dataclass(eq=False)
class Listener:
    handler: EventHandler
    on_degraded: DegradedHandler | None = None
    on_resumed: ResumedHandler | None = None
    active: bool = True


@dataclass(eq=False)
class Channel:
    """One gateway subscription, shared by every listener with the same table and filters."""

    key: tuple
    table: str
    filters: tuple[Filter, ...]
    generation: int
    listeners: list[Listener] = field(default_factory=list)
    subscription: Subscription[ChangeEvent] | None = None
    task: asyncio.Task | None = None
    degraded: bool = False
    busy: int = 0
    closed: bool = False


@dataclass(eq=False)
class Route:
    """Handle returned to a view; closing it detaches the view's listener."""

    channel: Channel
    listener: Listener

    @property
    def degraded(self) -> bool:
        return self.channel.degraded

    @property
    def active(self) -> bool:
        return self.listener.active and not self.channel.closed


class ChangeEventRouter:
    """Keeps one subscription per (table, filters, session generation) and dispatches its events.

    Events are handed to listeners in delivery order. A dropped stream is
    resubscribed with exponential backoff; when every attempt fails the channel
    is marked degraded and its listeners are told once. Opening another route on
    a degraded channel starts a fresh round of attempts, and listeners are asked
    to catch up whenever a subscription comes back.
    """

    def __init__(
        self,
        gateway: Gateway,
        *,
        generation: Callable[[], int],
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = settings or get_settings()
        self._gateway = gateway
        self._generation = generation
        self._sleep = sleep
        self.initial_delay = settings.resubscribe_initial_delay
        self.max_delay = settings.resubscribe_max_delay
        self.max_attempts = settings.resubscribe_max_attempts
        self._channels: dict[tuple, Channel] = {}

    @staticmethod
    def _key(table: str, filters: Sequence[Filter], generation: int) -> tuple:
        return (table, tuple(sorted((item.column, item.op.value, repr(item.value)) for item in filters)), generation)

    def channel_count(self) -> int:
        return len(self._channels)

    def backoff(self, attempt: int) -> float:
        return min(self.initial_delay * (2**attempt), self.max_delay)

    async def open(
        self,
        table: str,
        handler: EventHandler,
        *,
        filters: Sequence[Filter] = (),
        on_degraded: DegradedHandler | None = None,
        on_resumed: ResumedHandler | None = None,
    ) -> Route:
        """Attach ``handler`` to the channel for ``table`` and ``filters``.

        ``on_resumed`` runs whenever the channel is subscribed again after an
        outage, so the listener can reload what it missed.
        """

        generation = self._generation()
        key = self._key(table, filters, generation)
        listener = Listener(handler=handler, on_degraded=on_degraded, on_resumed=on_resumed)
        channel = self._channels.get(key)
        if channel is None or channel.closed:
            channel = Channel(key=key, table=table, filters=tuple(filters), generation=generation)
            self._channels[key] = channel
            channel.listeners.append(listener)
            await self._start(channel)
        elif channel.degraded:
            # Degraded channels have no running task; retry for the new listener.
            channel.degraded = False
            channel.listeners.append(listener)
            logger.info("Retrying live updates for %s", table)
            await self._start(channel, skip=listener)
        else:
            channel.listeners.append(listener)
        return Route(channel=channel, listener=listener)

    async def _start(self, channel: Channel, *, skip: Listener | None = None) -> None:
        try:
            channel.subscription = await self._gateway.subscribe(channel.table, filters=channel.filters)
        except RemoteError:
            logger.warning("Subscription to %s failed; retrying in background", channel.table)
            channel.subscription = None
        if channel.closed or not channel.listeners:
            self._cancel(channel)
            return
        channel.task = asyncio.create_task(self._run(channel))
        if skip is not None and channel.subscription is not None:
            await self._resume(channel, skip=skip)

    async def _run(self, channel: Channel) -> None:
        attempt = 0
        while not channel.closed:
            if channel.subscription is None:
                if attempt >= self.max_attempts:
                    self._degrade(channel)
                    return
                delay = self.backoff(attempt)
                attempt += 1
                logger.warning(
                    "Resubscribing to %s in %.2fs (attempt %d/%d)", channel.table, delay, attempt, self.max_attempts
                )
                await self._sleep(delay)
                if channel.closed:
                    return
                try:
                    channel.subscription = await self._gateway.subscribe(channel.table, filters=channel.filters)
                except RemoteError as exc:
                    logger.warning("Resubscription to %s failed: %s", channel.table, exc.message)
                    continue
                attempt = 0
                await self._resume(channel)
                if channel.closed:
                    return
            try:
                async for event in channel.subscription:
                    if channel.closed:
                        return
                    if channel.generation != self._generation():
                        logger.debug("Dropping %s event from an ended session", channel.table)
                        continue
                    await self._dispatch(channel, event)
            except RemoteError as exc:
                logger.warning("Subscription to %s dropped: %s", channel.table, exc.message)
                channel.subscription = None
                continue
            if channel.closed:
                return
            channel.subscription = None

    async def _dispatch(self, channel: Channel, event: ChangeEvent) -> None:
        channel.busy += 1
        try:
            for listener in list(channel.listeners):
                if not listener.active or channel.closed:
                    continue
                try:
                    await listener.handler(event)
                except Exception:
                    logger.exception("Handler for %s %s event failed", channel.table, event.kind)
        finally:
            channel.busy -= 1

    async def _resume(self, channel: Channel, *, skip: Listener | None = None) -> None:
        logger.info("Live updates for %s resumed", channel.table)
        channel.busy += 1
        try:
            for listener in list(channel.listeners):
                if listener is skip or not listener.active or listener.on_resumed is None:
                    continue
                try:
                    await listener.on_resumed()
                except Exception:
                    logger.exception("Catching up %s after reconnect failed", channel.table)
        finally:
            channel.busy -= 1

    def _degrade(self, channel: Channel) -> None:
        channel.degraded = True
        logger.error("Live updates for %s unavailable after %d attempts", channel.table, self.max_attempts)
        for listener in list(channel.listeners):
            if listener.active and listener.on_degraded is not None:
                listener.on_degraded()

    def _cancel(self, channel: Channel) -> None:
        channel.closed = True
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        if channel.subscription is not None:
            channel.subscription.cancel()
        if channel.task is not None and not channel.task.done():
            channel.task.cancel()

    def close(self, route: Route) -> None:
        """Detach ``route``; the subscription is cancelled with its last listener."""

        route.listener.active = False
        channel = route.channel
        if route.listener in channel.listeners:
            channel.listeners.remove(route.listener)
        if not channel.listeners:
            self._cancel(channel)

    async def close_all(self) -> None:
        channels = list(self._channels.values())
        for channel in channels:
            for listener in channel.listeners:
                listener.active = False
            channel.listeners.clear()
            self._cancel(channel)
        tasks = [channel.task for channel in channels if channel.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def backlog(self) -> int:
        """Events received but not yet handed to every listener."""

        total = 0
        for channel in self._channels.values():
            if channel.subscription is not None:
                total += channel.subscription.pending()
            total += channel.busy
        return total


__all__ = ["ChangeEventRouter", "Channel", "DEGRADED_MESSAGE", "Listener", "Route"]
