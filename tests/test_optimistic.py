"""Apply, reconcile and rollback rules of the mutation engine, without a backend."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from socialsync.errors import NetworkError, NotFoundError
from socialsync.schemas.events import ChangeKind
from socialsync.schemas.posts import Post
from socialsync.services.cache import EntityCache, Ordering
from socialsync.services.optimistic import MutationEngine, is_provisional, provisional_id

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _post(post_id: str, **extra) -> Post:
    return Post(id=post_id, created_at=NOW, user_id="u1", **extra)


@pytest.fixture
def engine() -> MutationEngine:
    return MutationEngine()


@pytest.fixture
def cache() -> EntityCache[Post]:
    return EntityCache(Ordering.NEWEST_FIRST, name="test-feed")


def test_provisional_ids_are_unique_and_recognisable():
    first, second = provisional_id(), provisional_id()
    assert first != second
    assert is_provisional(first)
    assert not is_provisional("0b6c5e9c-1d7c-4a45-9f0a-0c6b7f2d9a11")
    assert not is_provisional(None)


async def test_insert_success_leaves_only_the_authoritative_record(engine, cache):
    provisional = _post(provisional_id(), content="hello")
    seen_during_write: list[list[str]] = []

    async def write() -> Post:
        seen_during_write.append(cache.ids())
        return _post("P1", content="hello")

    result = await engine.insert(cache, provisional, write, table="posts", action="create post")

    assert result.ok
    assert seen_during_write == [[provisional.id]]
    assert cache.ids() == ["P1"]
    assert not cache.is_pending(provisional.id)


async def test_insert_failure_rolls_back_and_reports(engine, cache, caplog):
    caplog.set_level(logging.INFO)
    cache.upsert(_post("existing"))

    async def write() -> Post:
        raise NetworkError("Network error, please try again")

    result = await engine.insert(cache, _post(provisional_id()), write, table="posts", action="create post")

    assert not result.ok
    assert result.error == "Network error, please try again"
    assert cache.ids() == ["existing"]
    assert engine.in_flight() == 0
    assert "Rolled back create post" in caplog.text


def test_reconcile_twice_equals_reconcile_once(cache):
    provisional = _post("local-abc", content="hi")
    cache.upsert(provisional)
    cache.mark_pending(provisional.id)
    record = _post("P1", content="hi")

    MutationEngine.reconcile(cache, provisional.id, record)
    once = [item.model_dump() for item in cache.items]
    MutationEngine.reconcile(cache, provisional.id, record)
    MutationEngine.reconcile(cache, None, record)

    assert [item.model_dump() for item in cache.items] == once
    assert cache.ids() == ["P1"]


async def test_patch_failure_reverts_with_inverse(engine, cache):
    cache.upsert(_post("P1", likes_count=0, user_has_liked=False))

    async def write():
        raise NetworkError()

    result = await engine.patch(
        cache,
        "P1",
        lambda post: post.model_copy(update={"likes_count": post.likes_count + 1, "user_has_liked": True}),
        write,
        action="like",
        revert=lambda post: post.model_copy(update={"likes_count": post.likes_count - 1, "user_has_liked": False}),
    )

    assert not result.ok
    post = cache.get("P1")
    assert post.likes_count == 0
    assert post.user_has_liked is False
    assert not cache.is_pending("P1")


async def test_remove_restores_entry_when_nothing_was_deleted(engine, cache):
    cache.upsert(_post("P1"))

    async def write():
        return []

    result = await engine.remove(cache, "P1", write, action="delete post")

    assert not result.ok
    assert result.error == NotFoundError.default_message
    assert cache.ids() == ["P1"]


async def test_remove_success_keeps_entry_out(engine, cache):
    cache.upsert(_post("P1"))

    async def write():
        return [{"id": "P1"}]

    result = await engine.remove(cache, "P1", write, action="delete post")

    assert result.ok
    assert cache.ids() == []


def test_claim_matches_in_flight_write_by_fingerprint(engine, cache):
    pending = engine.track(
        "messages",
        ChangeKind.INSERT,
        {"chat_id": "c1", "user_id": "u1", "content": "hey"},
        provisional_id="local-1",
        cache=cache,
    )
    event_row = {"id": "m1", "chat_id": "c1", "user_id": "u1", "content": "hey"}

    assert engine.claim("messages", ChangeKind.INSERT, {**event_row, "content": "other"}) is None
    assert engine.claim("messages", ChangeKind.INSERT, event_row) is pending
    assert pending.authoritative_id == "m1"
    # A write is claimed at most once.
    assert engine.claim("messages", ChangeKind.INSERT, event_row) is None


def test_claim_after_settle_matches_by_id_once(engine, cache):
    pending = engine.track("likes", ChangeKind.INSERT, {"post_id": "P1", "user_id": "u1"}, cache=cache)
    engine.settle(pending, "like-1")
    assert engine.in_flight("likes") == 0

    row = {"id": "like-1", "post_id": "P1", "user_id": "u1"}
    assert engine.claim("likes", ChangeKind.INSERT, row, cache=cache) is pending
    assert engine.claim("likes", ChangeKind.INSERT, row, cache=cache) is None


def test_claim_is_scoped_to_the_cache_that_applied_the_write(engine, cache):
    other: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST, name="profile-feed")
    pending = engine.track("likes", ChangeKind.INSERT, {"post_id": "P1", "user_id": "u1"}, cache=cache)
    engine.settle(pending, "like-1")
    row = {"id": "like-1", "post_id": "P1", "user_id": "u1"}

    assert engine.claim("likes", ChangeKind.INSERT, row, cache=other) is None
    assert engine.claim("likes", ChangeKind.INSERT, row, cache=cache) is pending


def test_abandoned_write_is_never_claimed(engine):
    pending = engine.track("likes", ChangeKind.INSERT, {"post_id": "P1", "user_id": "u1"})
    engine.abandon(pending)
    assert engine.claim("likes", ChangeKind.INSERT, {"id": "x", "post_id": "P1", "user_id": "u1"}) is None


async def test_serialized_runs_actions_on_one_key_in_order(engine):
    order: list[str] = []
    held: list[int] = []

    async def action(name: str, delay: float) -> None:
        async with engine.serialized(("like", "P1")):
            order.append(f"{name}-start")
            held.append(engine.lock_count())
            await asyncio.sleep(delay)
            order.append(f"{name}-end")

    await asyncio.gather(action("first", 0.01), action("second", 0))

    assert order == ["first-start", "first-end", "second-start", "second-end"]
    assert held == [1, 1]
    # The lock is dropped once nothing holds or waits for it.
    assert engine.lock_count() == 0


async def test_fire_and_forget_logs_failures(engine, caplog):
    caplog.set_level(logging.WARNING)

    async def failing():
        raise NetworkError("offline")

    engine.fire_and_forget(failing, action="like notification")
    await engine.drain()

    assert "like notification failed: offline" in caplog.text


async def test_reset_forgets_everything(engine, cache):
    engine.track("posts", ChangeKind.INSERT, {"user_id": "u1", "content": "x"}, cache=cache)
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    task = engine.fire_and_forget(slow, action="slow")
    await started.wait()
    await engine.reset()

    assert engine.in_flight() == 0
    assert task.cancelled()
