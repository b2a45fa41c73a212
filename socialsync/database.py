"""Database layer utilities for the SQLAlchemy-backed local backend."""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url``.

    In-memory SQLite databases share one connection so every session sees the
    same data.
    """

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(database_url, pool_pre_ping=True, future=True)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Return the engine configured through ``DATABASE_URL``."""

    return build_engine(get_settings().database_url)


def init_db(engine: Engine | None = None) -> None:
    """Initialise database schema by creating tables when missing."""
    # Import models to ensure they are registered on the metadata before create_all runs.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "get_engine",
    "init_db",
]
