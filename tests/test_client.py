"""Gateway selection, logging setup and isolation between session generations."""
from __future__ import annotations

import logging

import pytest

from socialsync.client import LOG_FORMAT, build_gateway, configure_logging, create_client
from socialsync.config import Settings
from socialsync.errors import ConfigurationError
from socialsync.gateway.local import SqlGateway
from socialsync.gateway.rest import RestGateway

PASSWORD = "correct-horse"


def test_backend_url_requires_a_real_anon_key():
    settings = Settings(backend_url="https://backend.example.test", backend_anon_key="your-anon-key")

    with pytest.raises(ConfigurationError, match="BACKEND_ANON_KEY"):
        build_gateway(settings)


async def test_backend_url_selects_the_rest_gateway():
    settings = Settings(backend_url="https://backend.example.test/", backend_anon_key="anon-123")

    gateway = build_gateway(settings)

    assert isinstance(gateway, RestGateway)
    assert gateway.base_url == "https://backend.example.test"
    await gateway.aclose()


def test_without_backend_url_a_local_backend_is_used(settings, backend):
    assert isinstance(build_gateway(settings), SqlGateway)
    gateway = build_gateway(settings, backend=backend)
    assert gateway.backend is backend


def test_configure_logging_uses_the_package_format(monkeypatch):
    calls: list[dict] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("debug")

    assert calls == [{"level": logging.DEBUG, "format": LOG_FORMAT}]


async def test_client_works_as_an_async_context_manager(settings, backend):
    async with create_client(settings, backend=backend) as client:
        await client.session.sign_up("cm@example.test", PASSWORD, username="cm")
        feed = await client.open_feed()
        assert client.open_views == [feed]

    assert feed.closed
    assert client.router.channel_count() == 0


async def test_closing_a_view_releases_its_routes(make_client, backend):
    alice = await make_client("alice")
    feed = await alice.open_feed()
    assert backend.feed.subscriber_count("posts") == 1

    feed.close()

    assert alice.open_views == []
    assert backend.feed.subscriber_count("posts") == 0


async def test_views_from_a_previous_account_are_closed_and_silent(make_client, settle):
    bob = await make_client("bob")
    client = await make_client("alice")
    await client.gateway.insert("posts", {"user_id": client.session.account_id, "content": "alice was here"})
    old_feed = await client.open_feed()
    old_chats = await client.open_chat_list()
    assert len(old_feed.items) == 1

    await client.session.sign_out()
    await client.session.sign_in_with_password("bob@example.test", PASSWORD)
    await bob.gateway.insert("posts", {"user_id": bob.session.account_id, "content": "new generation"})
    await settle(client)

    assert client.session.generation == 3
    for view in (old_feed, old_chats):
        assert view.closed
        assert view.stale
        assert view.items == []
    assert client.open_views == []
    assert client.engine.in_flight() == 0

    result = await old_feed.toggle_like("anything")
    assert result.error == "You must be signed in"

    new_feed = await client.open_feed()
    assert [post.content for post in new_feed.items] == ["new generation", "alice was here"]
    assert new_feed.viewer_id == bob.session.account_id


async def test_signing_out_cancels_live_subscriptions(make_client, backend):
    client = await make_client("alice")
    await client.open_feed()
    await client.open_notifications()
    assert backend.feed.subscriber_count() > 0

    await client.session.sign_out()

    assert client.router.channel_count() == 0
    assert backend.feed.subscriber_count() == 0
