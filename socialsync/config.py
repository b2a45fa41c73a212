"""
Runtime configuration helpers for the sync client.

Loads settings from the process environment and the optional .env file
located in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    app_name: str = Field(default="socialsync", alias="APP_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Local backend (SQLAlchemy) used when no hosted backend is configured
    database_url: str = Field(default="sqlite+pysqlite:///:memory:", alias="DATABASE_URL")

    # Hosted backend
    backend_url: str | None = Field(default=None, alias="BACKEND_URL")
    backend_anon_key: str | None = Field(default=None, alias="BACKEND_ANON_KEY")
    site_url: str = Field(default="http://localhost:3000", alias="SITE_URL")
    request_timeout: float = Field(default=10.0, alias="REQUEST_TIMEOUT")
    access_token_minutes: int = Field(default=60, alias="ACCESS_TOKEN_MINUTES")

    # Object storage
    storage_backend: Literal["local", "spaces"] = Field(default="local", alias="STORAGE_BACKEND")
    storage_root: str = Field(default="./storage", alias="STORAGE_ROOT")
    storage_public_url: str = Field(
        default="http://localhost:3000/storage/v1/object/public",
        alias="STORAGE_PUBLIC_URL",
    )

    # View sizes
    feed_page_size: int = Field(default=20, alias="FEED_PAGE_SIZE")
    notifications_page_size: int = Field(default=50, alias="NOTIFICATIONS_PAGE_SIZE")
    search_page_size: int = Field(default=20, alias="SEARCH_PAGE_SIZE")

    # Client-side validation limits
    post_image_max_bytes: int = Field(default=5 * 1024 * 1024, alias="POST_IMAGE_MAX_BYTES")
    avatar_max_bytes: int = Field(default=2 * 1024 * 1024, alias="AVATAR_MAX_BYTES")
    message_max_length: int = Field(default=2000, alias="MESSAGE_MAX_LENGTH")
    post_max_length: int = Field(default=5000, alias="POST_MAX_LENGTH")
    comment_max_length: int = Field(default=1000, alias="COMMENT_MAX_LENGTH")

    # Realtime resubscription
    resubscribe_initial_delay: float = Field(default=0.5, alias="RESUBSCRIBE_INITIAL_DELAY")
    resubscribe_max_delay: float = Field(default=30.0, alias="RESUBSCRIBE_MAX_DELAY")
    resubscribe_max_attempts: int = Field(default=6, alias="RESUBSCRIBE_MAX_ATTEMPTS")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
