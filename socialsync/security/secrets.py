"""Loading of keys and tokens the client cannot run without."""
from __future__ import annotations

import os
import re
from typing import Final, Mapping

from ..errors import ConfigurationError

__all__ = ["MissingSecretError", "is_placeholder", "require_secret", "require_value"]


class MissingSecretError(ConfigurationError):
    """A required key is unset or still holds a template value."""

    def __init__(self, name: str) -> None:
        super().__init__(f"{name} is required and must not be left at a placeholder value")
        self.name = name


_PLACEHOLDER_VALUES: Final[frozenset[str]] = frozenset(
    {"changeme", "change-me", "placeholder", "example", "sample", "none", "null"}
)

# Template values copied from docs, e.g. "<anon key>" or "your-anon-key".
_TEMPLATE_PATTERN: Final = re.compile(r"^(<.*>|your[-_ ].*|\$\{.*\})$")


def is_placeholder(value: str | None) -> bool:
    normalized = (value or "").strip().lower()
    if not normalized:
        return True
    return normalized in _PLACEHOLDER_VALUES or bool(_TEMPLATE_PATTERN.match(normalized))


def require_value(name: str, value: str | None) -> str:
    """``value`` trimmed, or :class:`MissingSecretError` naming ``name``."""

    if is_placeholder(value):
        raise MissingSecretError(name)
    return value.strip()


def require_secret(name: str, environ: Mapping[str, str] | None = None) -> str:
    """Read ``name`` from ``environ`` (the process environment by default)."""

    source = os.environ if environ is None else environ
    return require_value(name, source.get(name))
