"""Session state machine, auth flows and best-effort profile provisioning."""
from __future__ import annotations

import asyncio
import logging
import random

import pytest

from socialsync.client import SocialClient
from socialsync.errors import AuthorizationError, NetworkError, ValidationError
from socialsync.schemas.profiles import Account
from socialsync.services.profile_service import derive_username
from socialsync.services.session import SessionStatus

PASSWORD = "correct-horse"


async def _drain(subscription) -> list:
    items = []
    while subscription.pending():
        items.append(await subscription.__anext__())
    return items


async def _yield(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def test_sign_up_authenticates_and_provisions_chosen_username(make_client):
    client = await make_client("alice")
    session = client.session

    assert session.status is SessionStatus.AUTHENTICATED
    assert session.generation == 1
    assert session.profile is not None
    assert session.profile.username == "alice"
    assert session.profile.id == session.account_id


async def test_each_transition_is_published_once(make_client):
    await make_client("alice")
    client = await make_client()
    changes = client.session.on_session_change()

    await client.session.sign_in_with_password("alice@example.test", PASSWORD)
    await _yield()

    published = await _drain(changes)
    assert [change.status for change in published] == [SessionStatus.AUTHENTICATING, SessionStatus.AUTHENTICATED]
    assert published[-1].generation == 1
    assert published[-1].account.email == "alice@example.test"


async def test_failed_sign_in_returns_to_unauthenticated(make_client):
    await make_client("alice")
    client = await make_client()

    with pytest.raises(AuthorizationError, match="Invalid login credentials"):
        await client.session.sign_in_with_password("alice@example.test", "wrong-password")

    assert client.session.status is SessionStatus.UNAUTHENTICATED
    assert client.session.generation == 0
    assert client.session.loading is False


async def test_teardown_runs_before_the_change_is_published(make_client):
    client = await make_client("alice")
    alice_id = client.session.account_id
    changes = client.session.on_session_change()
    observed: list[tuple] = []

    async def hook(generation: int) -> None:
        observed.append((generation, client.session.account_id, changes.pending()))

    client.session.add_teardown(hook)
    await client.session.sign_out()

    assert observed == [(2, alice_id, 0)]
    assert client.session.status is SessionStatus.UNAUTHENTICATED
    assert [change.status for change in await _drain(changes)] == [SessionStatus.UNAUTHENTICATED]


async def test_profile_failure_never_blocks_sign_in(make_client, monkeypatch, caplog):
    caplog.set_level(logging.WARNING)
    await make_client("alice")
    client = await make_client()

    async def broken(account):
        raise NetworkError("offline")

    monkeypatch.setattr(client.session.profiles, "ensure_profile", broken)
    await client.session.sign_in_with_password("alice@example.test", PASSWORD)
    await client.session.profile_task

    assert client.session.status is SessionStatus.AUTHENTICATED
    assert client.session.profile is None
    assert "Profile provisioning" in caplog.text


async def test_existing_profile_is_loaded_not_recreated(make_client):
    alice = await make_client("alice")
    client = await make_client()

    await client.session.sign_in_with_password("alice@example.test", PASSWORD)
    profile = await client.session.require_profile()

    assert profile.id == alice.session.account_id
    assert profile.username == "alice"


async def test_taken_username_falls_back_to_derived_name(make_client):
    await make_client("sam")
    client = await make_client()

    await client.session.sign_up("other@example.test", PASSWORD, username="sam")
    profile = await client.session.require_profile()

    assert profile is not None
    assert profile.username.startswith("other")
    assert profile.username != "sam"


def test_derive_username_prefers_full_name():
    rng = random.Random(3)
    account = Account(id="a1", email="ada@example.test", user_metadata={"full_name": "Ada  Lovelace"})
    username = derive_username(account, rng)
    assert username.startswith("adalovelace")
    assert username[len("adalovelace"):].isdigit()

    by_email = derive_username(Account(id="a2", email="grace@example.test"), rng)
    assert by_email.startswith("grace")

    anonymous = derive_username(Account(id="a3"), rng)
    assert anonymous.startswith("user")


async def test_unsupported_provider_is_rejected(make_client):
    client = await make_client()

    with pytest.raises(ValidationError, match="Unsupported provider: provider is not enabled"):
        await client.session.sign_in_with_provider("myspace")

    assert client.session.status is SessionStatus.UNAUTHENTICATED


async def test_provider_sign_in_completes_with_code(make_client, backend):
    client = await make_client()

    url = await client.session.sign_in_with_provider("google")
    assert "provider=google" in url
    assert client.session.status is SessionStatus.AUTHENTICATING

    code = backend.issue_provider_code("google", "gina@example.test", {"full_name": "Gina Rossi"})
    account = await client.session.complete_provider_sign_in(code)
    profile = await client.session.require_profile()

    assert client.session.status is SessionStatus.AUTHENTICATED
    assert account.email == "gina@example.test"
    assert profile.username.startswith("ginarossi")


async def test_magic_link_sign_in(make_client, backend):
    client = await make_client()

    await client.session.request_magic_link("mia@example.test")
    message = backend.outbox[-1]
    assert message.kind == "magiclink"
    assert "/auth/callback?" in message.link

    await client.session.verify_otp("mia@example.test", message.token)

    assert client.session.authenticated
    assert client.session.account.email == "mia@example.test"


async def test_password_reset_flow(make_client, backend):
    await make_client("alice")
    client = await make_client()

    await client.session.reset_password("alice@example.test")
    message = backend.outbox[-1]
    assert message.kind == "recovery"

    await client.session.verify_otp("alice@example.test", message.token, kind="recovery")
    await client.session.update_password("brand-new-secret")
    await client.session.sign_out()

    await client.session.sign_in_with_password("alice@example.test", "brand-new-secret")
    assert client.session.authenticated


async def test_reset_for_unknown_address_is_silent(make_client, backend):
    client = await make_client()
    await client.session.reset_password("nobody@example.test")
    assert backend.outbox == []


async def test_rejected_refresh_signs_out(make_client, backend):
    client = await make_client("alice")
    backend.revoke_refresh_token(client.gateway.auth.current_session.refresh_token)

    assert await client.session.refresh() is None
    assert client.session.status is SessionStatus.UNAUTHENTICATED
    assert client.session.generation == 2


async def test_refresh_rotates_tokens_and_keeps_the_generation(make_client):
    client = await make_client("alice")
    old_refresh_token = client.gateway.auth.current_session.refresh_token

    account = await client.session.refresh()

    assert account.id == client.session.account_id
    assert client.session.generation == 1
    assert client.gateway.auth.current_session.refresh_token != old_refresh_token


async def test_initialize_restores_an_existing_session(make_client, settings):
    client = await make_client("alice")
    restored_client = SocialClient(client.gateway, settings=settings)

    restored = await restored_client.session.initialize()

    assert restored.id == client.session.account_id
    assert restored_client.session.authenticated
    assert restored_client.session.generation == 1
    await restored_client.session.close()
