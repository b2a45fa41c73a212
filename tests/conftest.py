"""Shared fixtures: an in-memory local backend per test and signed-in clients on top of it."""
from __future__ import annotations

import asyncio
import os
import random
from typing import AsyncIterator, Awaitable, Callable

import pytest

# Settings are read at import time; keep tests off any developer .env values.
os.environ.setdefault("LOCAL_JWT_SECRET", "test-local-jwt-secret")
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "local"
os.environ.pop("BACKEND_URL", None)

from socialsync.client import SocialClient, create_client  # noqa: E402
from socialsync.config import Settings  # noqa: E402
from socialsync.gateway.local import LocalBackend  # noqa: E402
from socialsync.gateway.storage import LocalObjectStorage  # noqa: E402

PASSWORD = "correct-horse"


async def _wait_idle(router, rounds: int = 200) -> None:
    quiet = 0
    for _ in range(rounds):
        await asyncio.sleep(0)
        quiet = 0 if router.backlog() else quiet + 1
        if quiet >= 3:
            return


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        backend_url=None,
        resubscribe_initial_delay=0.0,
        resubscribe_max_delay=0.0,
        resubscribe_max_attempts=3,
    )


@pytest.fixture
def backend(tmp_path, settings: Settings) -> LocalBackend:
    storage = LocalObjectStorage(tmp_path / "storage", "http://localhost:3000/storage/v1/object/public")
    return LocalBackend(settings=settings, storage=storage, jwt_secret="test-jwt-secret")


@pytest.fixture
async def make_client(
    backend: LocalBackend, settings: Settings
) -> AsyncIterator[Callable[..., Awaitable[SocialClient]]]:
    clients: list[SocialClient] = []

    async def _factory(username: str | None = None, *, seed: int = 7) -> SocialClient:
        client = create_client(settings, backend=backend, rng=random.Random(seed))
        await client.initialize()
        clients.append(client)
        if username is not None:
            await client.session.sign_up(f"{username}@example.test", PASSWORD, username=username)
            await client.session.require_profile()
        return client

    yield _factory

    for client in clients:
        await client.aclose()


@pytest.fixture
def settle() -> Callable[..., Awaitable[None]]:
    """Wait until side writes have finished and every queued change event is dispatched."""

    async def _settle(*clients: SocialClient) -> None:
        for _ in range(3):
            for client in clients:
                await client.engine.drain()
                await _wait_idle(client.router)

    return _settle


@pytest.fixture
def wait_idle() -> Callable[..., Awaitable[None]]:
    """Yield until a router has handed every queued event to its listeners."""

    return _wait_idle
