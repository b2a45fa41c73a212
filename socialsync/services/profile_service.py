"""Profile provisioning, lookup, search and avatar updates."""
from __future__ import annotations

import logging
import random
import re
from typing import Sequence

from ..config import Settings, get_settings
from ..errors import ConflictError, NotFoundError
from ..gateway.base import Gateway, asc, eq, ilike, not_in
from ..schemas.profiles import Account, Profile
from .uploads import AVATAR_BUCKET, ImageUpload, upload_image, validate_image

logger = logging.getLogger(__name__)

PROVISION_ATTEMPTS = 3


def derive_username(account: Account, rng: random.Random) -> str:
    """Username from the full name, else the email local part, plus a numeric suffix."""

    metadata = account.user_metadata or {}
    full_name = metadata.get("full_name")
    if isinstance(full_name, str) and full_name.strip():
        base = re.sub(r"\s+", "", full_name).lower()
    elif account.email:
        base = account.email.split("@")[0]
    else:
        base = f"user{rng.randint(0, 9999)}"
    return f"{base}{rng.randint(0, 999)}"


class ProfileService:
    def __init__(self, gateway: Gateway, *, settings: Settings | None = None, rng: random.Random | None = None) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()

    async def get_profile(self, profile_id: str) -> Profile:
        row = await self.gateway.query_one("profiles", filters=[eq("id", profile_id)])
        return Profile.model_validate(row)

    async def find_profile(self, profile_id: str) -> Profile | None:
        try:
            return await self.get_profile(profile_id)
        except NotFoundError:
            return None

    async def ensure_profile(self, account: Account) -> Profile | None:
        """Create the account's profile if it has none.

        A username picked at sign-up is tried first; conflicts fall back to a
        derived name with a fresh suffix. Returns ``None`` when every attempt
        collides.
        """

        existing = await self.find_profile(account.id)
        if existing is not None:
            return existing

        metadata = account.user_metadata or {}
        preferred = metadata.get("username")
        for attempt in range(PROVISION_ATTEMPTS):
            if attempt == 0 and isinstance(preferred, str) and preferred.strip():
                username = preferred.strip()
            else:
                username = derive_username(account, self.rng)
            try:
                row = await self.gateway.insert(
                    "profiles",
                    {"id": account.id, "username": username, "avatar_url": metadata.get("avatar_url")},
                )
            except ConflictError:
                existing = await self.find_profile(account.id)
                if existing is not None:
                    return existing
                logger.info("Username %s is taken; trying another", username)
                continue
            logger.info("Created profile %s for account %s", username, account.id)
            return Profile.model_validate(row)

        logger.warning("Could not provision a profile for %s after %d attempts", account.id, PROVISION_ATTEMPTS)
        return None

    async def search_profiles(self, query: str, *, limit: int | None = None) -> list[Profile]:
        term = (query or "").strip()
        if not term:
            return []
        rows = await self.gateway.query(
            "profiles",
            filters=[ilike("username", f"%{term}%")],
            order=asc("username"),
            limit=limit or self.settings.search_page_size,
        )
        return [Profile.model_validate(row) for row in rows]

    async def list_member_candidates(self, exclude_ids: Sequence[str]) -> list[Profile]:
        """Profiles that can still be added to a chat, alphabetically."""

        filters = [not_in("id", list(exclude_ids))] if exclude_ids else []
        rows = await self.gateway.query("profiles", filters=filters, order=asc("username"))
        return [Profile.model_validate(row) for row in rows]

    async def update_avatar(self, account_id: str, upload: ImageUpload) -> Profile:
        validate_image(upload, max_bytes=self.settings.avatar_max_bytes)
        url = await upload_image(
            self.gateway, AVATAR_BUCKET, account_id, upload, max_bytes=self.settings.avatar_max_bytes
        )
        rows = await self.gateway.update("profiles", {"avatar_url": url}, filters=[eq("id", account_id)])
        if not rows:
            raise NotFoundError("Profile not found")
        return Profile.model_validate(rows[0])


__all__ = ["ProfileService", "derive_username"]
