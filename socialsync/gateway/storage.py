"""Object storage backends for avatars and post images."""
from __future__ import annotations

import asyncio
import io
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, cast
from urllib.parse import urlparse

from boto3.session import Session
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ConfigurationError, NetworkError, ValidationError
from ..security.secrets import is_placeholder, require_secret

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


def sanitize_segments(parts: Iterable[str]) -> list[str]:
    """Sanitize path segments to be safe for object keys."""

    sanitized: list[str] = []
    for part in parts:
        if part in {"", ".", ".."}:
            continue
        cleaned = re.sub(r"[^A-Za-z0-9._-]", "-", part.strip())
        cleaned = re.sub(r"-+", "-", cleaned).strip("-_")
        if cleaned:
            sanitized.append(cleaned)
    return sanitized


def object_key(bucket: str, path: str) -> str:
    segments = sanitize_segments(f"{bucket}/{path}".replace("\\", "/").split("/"))
    if len(segments) < 2:
        raise ValidationError("Upload path is empty")
    return "/".join(segments)


class ObjectStorage(ABC):
    """Upload-by-path storage returning publicly resolvable URLs."""

    @abstractmethod
    async def put(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        ...


class LocalObjectStorage(ObjectStorage):
    """Writes objects under ``root`` and serves them from ``public_url``."""

    def __init__(self, root: str | Path, public_url: str) -> None:
        self.root = Path(root)
        self.public_url = public_url.rstrip("/")

    async def put(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        key = object_key(bucket, path)
        target = self.root / key

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.exception("Writing %s to local storage failed", key)
            raise NetworkError("Upload failed") from exc
        return f"{self.public_url}/{key}"


@dataclass(frozen=True)
class SpacesConfig:
    """Runtime configuration extracted from environment variables."""

    key: str
    secret: str
    region: str
    bucket: str
    api_endpoint: str
    public_endpoint: str


@lru_cache(maxsize=1)
def load_spaces_config() -> SpacesConfig:
    """Read and validate DigitalOcean Spaces configuration from the environment."""

    required: dict[str, str | None] = {
        "DO_SPACES_KEY": os.getenv("DO_SPACES_KEY"),
        "DO_SPACES_SECRET": os.getenv("DO_SPACES_SECRET"),
        "DO_SPACES_REGION": os.getenv("DO_SPACES_REGION"),
        "DO_SPACES_NAME": os.getenv("DO_SPACES_NAME"),
        "DO_SPACES_ENDPOINT": os.getenv("DO_SPACES_ENDPOINT"),
    }

    missing = [name for name, value in required.items() if not value or not value.strip()]
    if missing:
        raise ConfigurationError(
            "Missing required DigitalOcean Spaces configuration: " + ", ".join(sorted(missing))
        )

    key = require_secret("DO_SPACES_KEY")
    secret = require_secret("DO_SPACES_SECRET")

    region = cast(str, required["DO_SPACES_REGION"]).strip()
    bucket = cast(str, required["DO_SPACES_NAME"]).strip()
    endpoint_raw = cast(str, required["DO_SPACES_ENDPOINT"]).strip()

    if is_placeholder(region):
        raise ConfigurationError("DO_SPACES_REGION must be set to a valid region identifier")
    if is_placeholder(bucket):
        raise ConfigurationError("DO_SPACES_NAME must be set to the target bucket name")

    public_endpoint = endpoint_raw.rstrip("/")
    parsed = urlparse(public_endpoint)
    if not parsed.scheme:
        public_endpoint = f"https://{public_endpoint.lstrip(':/')}"
        parsed = urlparse(public_endpoint)
    if not (parsed.netloc or parsed.path):
        raise ConfigurationError("DO_SPACES_ENDPOINT must include a hostname.")

    return SpacesConfig(
        key=key,
        secret=secret,
        region=region,
        bucket=bucket,
        api_endpoint=f"https://{region}.digitaloceanspaces.com",
        public_endpoint=parsed.geturl().rstrip("/"),
    )


@lru_cache(maxsize=1)
def get_spaces_client() -> BaseClient:
    """Create a singleton boto3 client for Spaces interactions."""

    config = load_spaces_config()
    session = Session()
    return session.client(
        "s3",
        region_name=config.region,
        endpoint_url=config.api_endpoint,
        aws_access_key_id=config.key,
        aws_secret_access_key=config.secret,
    )


class SpacesObjectStorage(ObjectStorage):
    """S3-compatible storage; logical buckets become key prefixes in one Space."""

    def __init__(self, client: BaseClient | None = None, config: SpacesConfig | None = None) -> None:
        self._client = client
        self._config = config

    @property
    def config(self) -> SpacesConfig:
        if self._config is None:
            self._config = load_spaces_config()
        return self._config

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = get_spaces_client()
        return self._client

    def build_public_url(self, key: str) -> str:
        normalized_key = key.lstrip("/")
        endpoint = self.config.public_endpoint.rstrip("/")
        return f"{endpoint}/{normalized_key}" if normalized_key else endpoint

    async def put(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        config = self.config
        key = object_key(bucket, path)
        s3_client = self.client

        def _upload() -> None:
            try:
                s3_client.upload_fileobj(
                    io.BytesIO(data),
                    config.bucket,
                    key,
                    ExtraArgs={"ACL": "public-read", "ContentType": content_type},
                )
            except (ClientError, BotoCoreError) as exc:  # pragma: no cover - network errors hard to reproduce
                logger.exception("Upload to DigitalOcean Spaces failed: %s", exc)
                raise NetworkError("Upload failed") from exc

        await asyncio.to_thread(_upload)
        return self.build_public_url(key)


def build_storage(settings: "Settings") -> ObjectStorage:
    """Return the storage backend selected by ``STORAGE_BACKEND``."""

    if settings.storage_backend == "spaces":
        return SpacesObjectStorage()
    return LocalObjectStorage(settings.storage_root, settings.storage_public_url)


__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "SpacesConfig",
    "SpacesObjectStorage",
    "build_storage",
    "get_spaces_client",
    "load_spaces_config",
    "object_key",
    "sanitize_segments",
]
