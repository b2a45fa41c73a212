"""Feed loading, live counters, optimistic posts and like toggles."""
from __future__ import annotations

import asyncio

import pytest

from socialsync.errors import NetworkError
from socialsync.gateway.base import eq
from socialsync.services.optimistic import is_provisional
from socialsync.services.uploads import ImageUpload

PNG = ImageUpload(filename="sunset.png", content_type="image/png", data=b"\x89PNG\r\n\x1a\n" + b"0" * 64)


async def _post_as(client, content: str) -> str:
    row = await client.gateway.insert("posts", {"user_id": client.session.account_id, "content": content})
    return row["id"]


async def test_feed_loads_posts_with_projection(make_client):
    alice = await make_client("alice")
    bob = await make_client("bob")
    post_id = await _post_as(bob, "first")
    await alice.gateway.insert("likes", {"post_id": post_id, "user_id": alice.session.account_id})
    await bob.gateway.insert("comments", {"post_id": post_id, "user_id": bob.session.account_id, "content": "me too"})

    feed = await alice.open_feed()

    post = feed.items[0]
    assert post.id == post_id
    assert post.profiles.username == "bob"
    assert post.likes_count == 1
    assert post.comments_count == 1
    assert post.user_has_liked is True
    assert feed.state.loading is False
    assert feed.state.error is None


async def test_optimistic_post_is_replaced_by_the_authoritative_one(make_client, settle, monkeypatch):
    alice = await make_client("alice")
    feed = await alice.open_feed()
    during_write: list[list[tuple]] = []
    real_insert = alice.gateway.insert

    async def observing_insert(table, payload):
        if table == "posts":
            during_write.append([(p.id, p.content, p.likes_count, p.comments_count) for p in feed.items])
        return await real_insert(table, payload)

    monkeypatch.setattr(alice.gateway, "insert", observing_insert)
    result = await feed.create_post("  hello  ")
    await settle(alice)

    assert result.ok
    (provisional,) = during_write[0]
    assert is_provisional(provisional[0])
    assert provisional[1:] == ("hello", 0, 0)
    assert [post.id for post in feed.items] == [result.record.id]
    assert not is_provisional(result.record.id)


async def test_echo_arriving_before_the_response_does_not_duplicate(make_client, settle, wait_idle, monkeypatch):
    alice = await make_client("alice")
    feed = await alice.open_feed()
    real_insert = alice.gateway.insert

    async def slow_response(table, payload):
        row = await real_insert(table, payload)
        # Let the change event be routed before the write returns.
        await wait_idle(alice.router)
        return row

    monkeypatch.setattr(alice.gateway, "insert", slow_response)
    result = await feed.create_post("hello")
    await settle(alice)

    assert result.ok
    assert [post.id for post in feed.items] == [result.record.id]


async def test_like_failure_rolls_back(make_client, monkeypatch):
    alice = await make_client("alice")
    bob = await make_client("bob")
    post_id = await _post_as(bob, "like me")
    feed = await alice.open_feed()

    async def offline(table, payload):
        raise NetworkError()

    monkeypatch.setattr(alice.gateway, "insert", offline)
    result = await feed.toggle_like(post_id)

    post = feed.cache.get(post_id)
    assert not result.ok
    assert result.error == NetworkError.default_message
    assert post.likes_count == 0
    assert post.user_has_liked is False
    assert feed.error == NetworkError.default_message
    assert alice.engine.in_flight("likes") == 0


async def test_rapid_toggles_follow_parity_without_double_counting(make_client, settle):
    alice = await make_client("alice")
    bob = await make_client("bob")
    post_id = await _post_as(bob, "tap tap")
    alice_feed = await alice.open_feed()
    bob_feed = await bob.open_feed()

    results = await asyncio.gather(*(alice_feed.toggle_like(post_id) for _ in range(5)))
    await settle(alice, bob)

    assert all(result.ok for result in results)
    local = alice_feed.cache.get(post_id)
    assert local.user_has_liked is True
    assert local.likes_count == 1
    assert bob_feed.cache.get(post_id).likes_count == 1
    assert bob_feed.cache.get(post_id).user_has_liked is False
    assert await alice.gateway.count("likes", filters=[eq("post_id", post_id)]) == 1

    await alice_feed.refresh()
    assert alice_feed.cache.get(post_id).likes_count == 1


async def test_even_number_of_toggles_leaves_post_unliked(make_client, settle):
    alice = await make_client("alice")
    post_id = await _post_as(alice, "mine")
    feed = await alice.open_feed()

    for _ in range(4):
        await feed.toggle_like(post_id)
    await settle(alice)

    post = feed.cache.get(post_id)
    assert post.user_has_liked is False
    assert post.likes_count == 0


async def test_one_client_sees_another_clients_activity(make_client, settle):
    alice = await make_client("alice")
    bob = await make_client("bob")
    post_id = await _post_as(alice, "hello world")
    feed = await alice.open_feed()

    await bob.gateway.insert("likes", {"post_id": post_id, "user_id": bob.session.account_id})
    comments = await bob.open_comments(post_id)
    await comments.add_comment("nice")
    new_post = await _post_as(bob, "from bob")
    await settle(alice, bob)

    post = feed.cache.get(post_id)
    assert post.likes_count == 1
    assert post.comments_count == 1
    assert post.user_has_liked is False
    assert feed.items[0].id == new_post
    assert feed.items[0].profiles.username == "bob"


async def test_post_deleted_elsewhere_leaves_the_feed(make_client, settle):
    alice = await make_client("alice")
    bob = await make_client("bob")
    post_id = await _post_as(bob, "short lived")
    feed = await alice.open_feed()

    await bob.gateway.delete("posts", filters=[eq("id", post_id)])
    await settle(alice)

    assert post_id not in feed.cache


async def test_profile_feed_only_shows_its_author(make_client, settle):
    alice = await make_client("alice")
    bob = await make_client("bob")
    await _post_as(alice, "alice post")
    feed = await alice.open_feed(author_id=bob.session.account_id)

    await _post_as(bob, "bob post")
    await _post_as(alice, "another alice post")
    await settle(alice)

    assert [post.content for post in feed.items] == ["bob post"]


@pytest.mark.parametrize(
    ("content", "image", "message"),
    [
        ("   ", None, "Write something or add an image"),
        ("caption", ImageUpload("notes.txt", "text/plain", b"hello"), "Only image files are allowed"),
        ("caption", ImageUpload("big.png", "image/png", b"0" * (5 * 1024 * 1024 + 1)), "Image size should be less than 5MB"),
    ],
)
async def test_invalid_posts_are_rejected_before_any_network_call(make_client, monkeypatch, content, image, message):
    alice = await make_client("alice")
    feed = await alice.open_feed()

    async def unexpected(*args, **kwargs):
        raise AssertionError("gateway must not be called")

    monkeypatch.setattr(alice.gateway, "insert", unexpected)
    monkeypatch.setattr(alice.gateway, "upload", unexpected)

    result = await feed.create_post(content, image)

    assert not result.ok
    assert result.error == message
    assert feed.items == []


async def test_post_with_image_is_uploaded_under_the_author_folder(make_client, settle, tmp_path):
    alice = await make_client("alice")
    feed = await alice.open_feed()

    result = await feed.create_post("", PNG)
    await settle(alice)

    assert result.ok
    prefix = f"http://localhost:3000/storage/v1/object/public/post-images/{alice.session.account_id}/"
    assert result.record.image_url.startswith(prefix)
    assert result.record.image_url.endswith(".png")
    stored = list((tmp_path / "storage" / "post-images" / alice.session.account_id).iterdir())
    assert len(stored) == 1
    assert feed.items[0].image_url == result.record.image_url


async def test_signed_out_viewer_cannot_act(make_client):
    client = await make_client()
    feed = await client.open_feed()

    result = await feed.create_post("hello")

    assert not result.ok
    assert result.error == "You must be signed in"
