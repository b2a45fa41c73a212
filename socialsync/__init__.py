"""Real-time sync and optimistic updates for a social app client."""

from .client import SocialClient, build_gateway, configure_logging, create_client
from .config import Settings, get_settings
from .errors import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RemoteError,
    SyncError,
    ValidationError,
)
from .services.optimistic import ActionResult
from .services.session import SessionStatus
from .services.uploads import ImageUpload
from .services.views import ViewState

__version__ = "0.1.0"

__all__ = [
    "ActionResult",
    "AuthorizationError",
    "ConfigurationError",
    "ConflictError",
    "ImageUpload",
    "NetworkError",
    "NotFoundError",
    "RemoteError",
    "SessionStatus",
    "Settings",
    "SocialClient",
    "SyncError",
    "ValidationError",
    "ViewState",
    "build_gateway",
    "configure_logging",
    "create_client",
    "get_settings",
]
