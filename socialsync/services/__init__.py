"""Client-side state: session, caches, optimistic writes and event routing."""

from .cache import EntityCache, Ordering
from .optimistic import ActionResult, MutationEngine
from .profile_service import ProfileService
from .router import DEGRADED_MESSAGE, ChangeEventRouter
from .session import SessionChange, SessionState, SessionStatus

__all__ = [
    "ActionResult",
    "ChangeEventRouter",
    "DEGRADED_MESSAGE",
    "EntityCache",
    "MutationEngine",
    "Ordering",
    "ProfileService",
    "SessionChange",
    "SessionState",
    "SessionStatus",
]
