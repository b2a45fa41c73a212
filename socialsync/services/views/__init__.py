"""Per-screen views: a cache, its live routes and the actions that mutate it."""

from .base import View, ViewContext, ViewState
from .chat import ChatView
from .chat_list import ChatListView
from .comments import CommentsView
from .feed import FeedView
from .notifications import NotificationsView, describe
from .unread import UnreadCounters

__all__ = [
    "ChatListView",
    "ChatView",
    "CommentsView",
    "FeedView",
    "NotificationsView",
    "UnreadCounters",
    "View",
    "ViewContext",
    "ViewState",
    "describe",
]
