"""Ordering, uniqueness and pending-entry rules of EntityCache."""
from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from socialsync.schemas.messages import Message
from socialsync.schemas.posts import Post
from socialsync.services.cache import EntityCache, Ordering, RecentKeys

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _post(post_id: str, minutes: int, **extra) -> Post:
    return Post(id=post_id, created_at=BASE + timedelta(minutes=minutes), user_id="u1", **extra)


def _message(message_id: str, minutes: int) -> Message:
    return Message(
        id=message_id, created_at=BASE + timedelta(minutes=minutes), chat_id="c1", user_id="u1", content=message_id
    )


def _assert_sorted(cache: EntityCache) -> None:
    stamps = [item.created_at for item in cache.items]
    if cache.ordering is Ordering.NEWEST_FIRST:
        assert stamps == sorted(stamps, reverse=True)
    else:
        assert stamps == sorted(stamps)
    assert len(set(cache.ids())) == len(cache.ids())


def test_newest_first_ordering():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.replace([_post("a", 1), _post("c", 3), _post("b", 2)])
    assert cache.ids() == ["c", "b", "a"]
    cache.upsert(_post("d", 4))
    assert cache.ids()[0] == "d"


def test_message_arrival_is_appended_without_reordering():
    cache: EntityCache[Message] = EntityCache(Ordering.OLDEST_FIRST)
    cache.replace([_message("m1", 1), _message("m2", 2)])
    cache.upsert(_message("m3", 3))
    assert cache.ids() == ["m1", "m2", "m3"]


def test_equal_timestamps_keep_arrival_order():
    cache: EntityCache[Message] = EntityCache(Ordering.OLDEST_FIRST)
    cache.upsert(_message("first", 1))
    cache.upsert(_message("second", 1))
    assert cache.ids() == ["first", "second"]


def test_upsert_replaces_existing_id_in_place():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.replace([_post("a", 1), _post("b", 2)])
    cache.upsert(_post("a", 1, content="edited"))
    assert cache.ids() == ["b", "a"]
    assert cache.get("a").content == "edited"
    assert len(cache) == 2


def test_upsert_with_new_timestamp_moves_entry():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.replace([_post("a", 1), _post("b", 2)])
    cache.upsert(_post("a", 5))
    assert cache.ids() == ["a", "b"]


def test_random_operations_keep_order_and_unique_ids():
    rng = random.Random(42)
    for ordering in Ordering:
        cache: EntityCache[Post] = EntityCache(ordering)
        for _ in range(300):
            post_id = f"p{rng.randint(0, 25)}"
            if rng.random() < 0.7:
                cache.upsert(_post(post_id, rng.randint(0, 10)))
            else:
                cache.remove(post_id)
            _assert_sorted(cache)


def test_replace_keeps_pending_entries():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.upsert(_post("local-1", 9, content="draft"))
    cache.mark_pending("local-1")
    cache.upsert(_post("p1", 1, likes_count=1))
    cache.mark_pending("p1")

    cache.replace([_post("p1", 1, likes_count=0), _post("p2", 2)])

    assert cache.ids() == ["local-1", "p2", "p1"]
    assert cache.get("p1").likes_count == 1


def test_replace_drops_entries_that_are_not_pending():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.replace([_post("a", 1), _post("b", 2)])
    cache.replace([_post("b", 2)])
    assert cache.ids() == ["b"]


def test_update_applies_change_to_entry():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.upsert(_post("a", 1))
    cache.update("a", lambda post: post.model_copy(update={"likes_count": 3}))
    assert cache.get("a").likes_count == 3
    assert cache.update("missing", lambda post: post) is None


def test_closed_cache_ignores_writes():
    cache: EntityCache[Post] = EntityCache(Ordering.NEWEST_FIRST)
    cache.upsert(_post("a", 1))
    cache.close()
    assert cache.closed
    assert cache.items == []
    assert cache.upsert(_post("b", 2)) is None
    cache.replace([_post("c", 3)])
    assert cache.items == []


def test_recent_keys_remember_a_bounded_window():
    seen = RecentKeys(limit=3)

    assert seen.add(("likes", "l1"))
    assert not seen.add(("likes", "l1"))
    for key in ("l2", "l3", "l4"):
        assert seen.add(("likes", key))

    assert len(seen) == 3
    assert ("likes", "l1") not in seen
    assert ("likes", "l4") in seen
