"""Error taxonomy shared by the gateway, the mutation engine and the views."""
from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every failure surfaced by the sync layer."""

    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)


class ConfigurationError(SyncError):
    """Raised when required settings are missing or invalid."""

    default_message = "Client is not configured"


class ValidationError(SyncError):
    """Client-side check failed; raised before any network call is made."""

    default_message = "Invalid input"


class RemoteError(SyncError):
    """A gateway operation failed on the backend or on the way to it."""

    default_message = "The server rejected the request"


class NetworkError(RemoteError):
    """Transient connectivity failure."""

    default_message = "Network error, please try again"


class AuthorizationError(RemoteError):
    """Row-level policy or authentication rejection."""

    default_message = "You are not allowed to do that"


class NotFoundError(RemoteError):
    """The referenced entity does not exist (or is not visible)."""

    default_message = "Not found"


class ConflictError(RemoteError):
    """Unique-constraint violation, e.g. a duplicate like."""

    default_message = "Already exists"


__all__ = [
    "SyncError",
    "ConfigurationError",
    "ValidationError",
    "RemoteError",
    "NetworkError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
]
