"""Views losing their live updates, recovering them, and reloading what they missed."""
from __future__ import annotations

import asyncio

from socialsync.errors import NetworkError
from socialsync.services.router import DEGRADED_MESSAGE


async def _until(predicate, rounds: int = 500) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _cut_off(client, monkeypatch, table: str) -> dict[str, bool]:
    """Refuse new subscriptions to ``table`` while ``offline`` is set."""

    real_subscribe = client.gateway.subscribe
    network = {"offline": True}

    async def subscribe(name, *, filters=()):
        if name == table and network["offline"]:
            raise NetworkError("offline")
        return await real_subscribe(name, filters=filters)

    monkeypatch.setattr(client.gateway, "subscribe", subscribe)
    return network


async def test_degraded_feed_keeps_its_snapshot_while_other_views_stay_live(make_client, backend, settle, monkeypatch):
    alice = await make_client("alice")
    bob = await make_client("bob")
    bob_id = bob.session.account_id
    row = await bob.gateway.insert("posts", {"user_id": bob_id, "content": "before the outage"})
    feed = await alice.open_feed()
    notifications = await alice.open_notifications()

    _cut_off(alice, monkeypatch, "posts")
    backend.feed.drop("posts")
    await _until(lambda: feed.degraded)

    await bob.gateway.insert("posts", {"user_id": bob_id, "content": "not seen live"})
    await bob.gateway.insert("likes", {"post_id": row["id"], "user_id": bob_id})
    await bob.gateway.insert(
        "notifications",
        {
            "user_id": alice.session.account_id,
            "type": "like",
            "related_id": row["id"],
            "from_user_id": bob_id,
            "is_read": False,
        },
    )
    await settle(alice)

    assert feed.state.error == DEGRADED_MESSAGE
    assert [post.content for post in feed.items] == ["before the outage"]
    # Likes travel on their own channel, which is still up.
    assert feed.items[0].likes_count == 1
    assert notifications.error is None
    assert [item.type for item in notifications.items] == ["like"]


async def test_reopened_chat_list_revives_a_degraded_shared_channel(make_client, backend, settle, monkeypatch):
    alice = await make_client("alice")
    bob = await make_client("bob")
    chats = await alice.open_chat_list()
    started = await chats.start_direct_chat(bob.session.account_id)
    assert started.ok
    chat_id = started.record
    counters = await alice.open_unread_counters()

    network = _cut_off(alice, monkeypatch, "messages")
    backend.feed.drop("messages")
    await _until(lambda: counters.degraded)
    assert counters.error == DEGRADED_MESSAGE
    assert chats.error == DEGRADED_MESSAGE

    chats.close()
    network["offline"] = False
    chats = await alice.open_chat_list()

    assert not counters.degraded
    assert counters.error is None
    assert chats.error is None

    await bob.gateway.insert(
        "messages", {"chat_id": chat_id, "user_id": bob.session.account_id, "content": "back online"}
    )
    await settle(alice)

    (summary,) = chats.items
    assert summary.last_message == "back online"
    assert summary.unread_count == 1
    assert counters.messages == 1


async def test_feed_reloads_posts_written_while_reconnecting(make_client, backend, settle, monkeypatch):
    alice = await make_client("alice")
    bob = await make_client("bob")
    feed = await alice.open_feed()
    assert feed.items == []
    real_subscribe = alice.gateway.subscribe
    refused: list[str] = []

    async def subscribe(table, *, filters=()):
        if table == "posts" and not refused:
            refused.append(table)
            await bob.gateway.insert("posts", {"user_id": bob.session.account_id, "content": "written during the outage"})
            raise NetworkError("offline")
        return await real_subscribe(table, filters=filters)

    monkeypatch.setattr(alice.gateway, "subscribe", subscribe)
    backend.feed.drop("posts")
    await _until(lambda: len(feed.items) == 1)
    await settle(alice)

    assert refused == ["posts"]
    assert [post.content for post in feed.items] == ["written during the outage"]
    assert not feed.degraded
    assert feed.error is None
