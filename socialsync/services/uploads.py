"""Client-side validation and placement of image uploads."""
from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import PurePosixPath
from uuid import uuid4

from ..errors import ValidationError
from ..gateway.base import Gateway

logger = logging.getLogger(__name__)

AVATAR_BUCKET = "avatars"
POST_IMAGE_BUCKET = "post-images"


@dataclass(frozen=True)
class ImageUpload:
    """A file picked by the user: its name, declared content type and bytes."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.filename or "").suffix.lstrip(".").lower()
        if suffix:
            return suffix
        guessed = mimetypes.guess_extension(self.content_type or "") or ""
        return guessed.lstrip(".") or "bin"


def _format_limit(max_bytes: int) -> str:
    megabytes = max_bytes / (1024 * 1024)
    return f"{megabytes:g}MB"


def validate_image(upload: ImageUpload, *, max_bytes: int) -> None:
    """Reject anything that is not an image under ``max_bytes`` before it leaves the client."""

    if not (upload.content_type or "").lower().startswith("image/"):
        raise ValidationError("Only image files are allowed")
    if upload.size == 0:
        raise ValidationError("The selected file is empty")
    if upload.size > max_bytes:
        raise ValidationError(f"Image size should be less than {_format_limit(max_bytes)}")


def upload_path(owner_id: str, upload: ImageUpload) -> str:
    return f"{owner_id}/{uuid4()}.{upload.extension}"


async def upload_image(
    gateway: Gateway,
    bucket: str,
    owner_id: str,
    upload: ImageUpload,
    *,
    max_bytes: int,
) -> str:
    """Validate, store under ``<owner_id>/<uuid>.<ext>`` and return the public URL."""

    validate_image(upload, max_bytes=max_bytes)
    path = upload_path(owner_id, upload)
    url = await gateway.upload(bucket, path, upload.data, content_type=upload.content_type)
    logger.debug("Uploaded %d bytes to %s/%s", upload.size, bucket, path)
    return url


__all__ = [
    "AVATAR_BUCKET",
    "ImageUpload",
    "POST_IMAGE_BUCKET",
    "upload_image",
    "upload_path",
    "validate_image",
]
