"""Subscription sharing, scoping, resubscription and degradation of the change event router."""
from __future__ import annotations

import asyncio
import logging

import pytest

from socialsync.config import Settings
from socialsync.errors import NetworkError
from socialsync.gateway.base import eq
from socialsync.schemas.events import ChangeEvent
from socialsync.services.router import ChangeEventRouter


async def _until(predicate, rounds: int = 100) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def delays() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(delays):
    async def _sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    return _sleep


def _router(gateway, fake_sleep, *, generation=lambda: 0, **overrides) -> ChangeEventRouter:
    values = {
        "resubscribe_initial_delay": 0.5,
        "resubscribe_max_delay": 1.0,
        "resubscribe_max_attempts": 3,
        **overrides,
    }
    return ChangeEventRouter(gateway, generation=generation, settings=Settings(**values), sleep=fake_sleep)


async def test_events_are_delivered_in_order_and_scoped_by_filter(make_client, fake_sleep, wait_idle):
    alice = await make_client("alice")
    bob = await make_client("bob")
    router = _router(alice.gateway, fake_sleep)
    received: list[str] = []

    async def handler(event: ChangeEvent) -> None:
        received.append(event.record["content"])

    await router.open("posts", handler, filters=[eq("user_id", alice.session.account_id)])
    for content in ("one", "two", "three"):
        await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": content})
    await bob.gateway.insert("posts", {"user_id": bob.session.account_id, "content": "not for this route"})
    await wait_idle(router)

    assert received == ["one", "two", "three"]
    await router.close_all()


async def test_routes_share_one_subscription_until_the_last_closes(make_client, backend, fake_sleep, wait_idle):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    first: list[ChangeEvent] = []
    second: list[ChangeEvent] = []

    async def to_first(event):
        first.append(event)

    async def to_second(event):
        second.append(event)

    route_a = await router.open("posts", to_first)
    route_b = await router.open("posts", to_second)
    assert router.channel_count() == 1
    assert backend.feed.subscriber_count("posts") == 1

    router.close(route_a)
    assert route_b.active
    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "hi"})
    await wait_idle(router)
    assert first == []
    assert len(second) == 1

    router.close(route_b)
    assert router.channel_count() == 0
    assert backend.feed.subscriber_count("posts") == 0


async def test_events_from_an_ended_generation_are_dropped(make_client, fake_sleep, wait_idle):
    alice = await make_client("alice")
    generation = {"value": 1}
    router = _router(alice.gateway, fake_sleep, generation=lambda: generation["value"])
    received: list[ChangeEvent] = []

    async def handler(event):
        received.append(event)

    await router.open("posts", handler)
    generation["value"] = 2
    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "late"})
    await wait_idle(router)

    assert received == []
    await router.close_all()


async def test_dropped_stream_is_resubscribed(make_client, backend, fake_sleep, delays, wait_idle):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    received: list[str] = []

    async def handler(event):
        received.append(event.record["content"])

    route = await router.open("posts", handler)
    backend.feed.drop("posts")
    await _until(lambda: delays and backend.feed.subscriber_count("posts") == 1)

    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "after reconnect"})
    await wait_idle(router)

    assert received == ["after reconnect"]
    assert delays == [0.5]
    assert not route.degraded
    await router.close_all()


async def test_route_degrades_after_every_resubscription_fails(make_client, backend, fake_sleep, delays, monkeypatch, caplog):
    caplog.set_level(logging.WARNING)
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    degraded: list[bool] = []

    async def handler(event):
        return None

    route = await router.open("posts", handler, on_degraded=lambda: degraded.append(True))

    async def refuse(table, *, filters=()):
        raise NetworkError("offline")

    monkeypatch.setattr(alice.gateway, "subscribe", refuse)
    backend.feed.drop("posts")
    await route.channel.task

    assert route.degraded
    assert degraded == [True]
    assert delays == [0.5, 1.0, 1.0]
    assert "Live updates for posts unavailable after 3 attempts" in caplog.text
    await router.close_all()


async def test_failed_initial_subscription_is_retried_in_background(make_client, fake_sleep, monkeypatch, wait_idle):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    real_subscribe = alice.gateway.subscribe
    calls = {"count": 0}

    async def flaky(table, *, filters=()):
        calls["count"] += 1
        if calls["count"] == 1:
            raise NetworkError("offline")
        return await real_subscribe(table, filters=filters)

    monkeypatch.setattr(alice.gateway, "subscribe", flaky)
    received: list[ChangeEvent] = []

    async def handler(event):
        received.append(event)

    route = await router.open("posts", handler)
    await _until(lambda: route.channel.subscription is not None)
    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "hello"})
    await wait_idle(router)

    assert calls["count"] == 2
    assert len(received) == 1
    await router.close_all()


async def test_failing_handler_does_not_stop_other_listeners(make_client, fake_sleep, caplog, wait_idle):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    received: list[ChangeEvent] = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        received.append(event)

    await router.open("posts", broken)
    await router.open("posts", healthy)
    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "hi"})
    await wait_idle(router)

    assert len(received) == 1
    assert "Handler for posts INSERT event failed" in caplog.text
    await router.close_all()


def test_backoff_is_exponential_and_capped(fake_sleep):
    router = ChangeEventRouter(
        object(),
        generation=lambda: 0,
        settings=Settings(resubscribe_initial_delay=0.5, resubscribe_max_delay=4.0),
        sleep=fake_sleep,
    )
    assert [router.backoff(attempt) for attempt in range(5)] == [0.5, 1.0, 2.0, 4.0, 4.0]


async def test_listeners_catch_up_after_a_resubscription(make_client, backend, fake_sleep):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    caught_up: list[str] = []

    async def handler(event):
        return None

    async def catch_up():
        caught_up.append("posts")

    await router.open("posts", handler, on_resumed=catch_up)
    assert caught_up == []

    backend.feed.drop("posts")
    await _until(lambda: caught_up)

    assert caught_up == ["posts"]
    await router.close_all()


async def test_new_route_on_a_degraded_channel_subscribes_again(make_client, backend, fake_sleep, monkeypatch, wait_idle):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)
    real_subscribe = alice.gateway.subscribe
    network = {"offline": False}

    async def flaky(table, *, filters=()):
        if network["offline"]:
            raise NetworkError("offline")
        return await real_subscribe(table, filters=filters)

    monkeypatch.setattr(alice.gateway, "subscribe", flaky)
    first: list[str] = []
    second: list[str] = []
    caught_up: list[str] = []

    async def to_first(event):
        first.append(event.record["content"])

    async def to_second(event):
        second.append(event.record["content"])

    async def first_catches_up():
        caught_up.append("first")

    async def second_catches_up():
        caught_up.append("second")

    route_a = await router.open("posts", to_first, on_resumed=first_catches_up)
    network["offline"] = True
    backend.feed.drop("posts")
    await route_a.channel.task
    assert route_a.degraded

    network["offline"] = False
    route_b = await router.open("posts", to_second, on_resumed=second_catches_up)

    assert route_b.channel is route_a.channel
    assert not route_a.degraded
    assert caught_up == ["first"]
    assert backend.feed.subscriber_count("posts") == 1

    await alice.gateway.insert("posts", {"user_id": alice.session.account_id, "content": "after recovery"})
    await wait_idle(router)

    assert first == ["after recovery"]
    assert second == ["after recovery"]
    await router.close_all()


async def test_new_route_on_a_degraded_channel_is_told_when_retries_fail_again(make_client, backend, fake_sleep, monkeypatch):
    alice = await make_client("alice")
    router = _router(alice.gateway, fake_sleep)

    async def handler(event):
        return None

    route_a = await router.open("posts", handler)

    async def refuse(table, *, filters=()):
        raise NetworkError("offline")

    monkeypatch.setattr(alice.gateway, "subscribe", refuse)
    backend.feed.drop("posts")
    await route_a.channel.task

    degraded: list[str] = []
    route_b = await router.open("posts", handler, on_degraded=lambda: degraded.append("second"))
    await route_b.channel.task

    assert route_b.degraded
    assert degraded == ["second"]
    await router.close_all()
