"""Convenience exports for schema layer."""
from .base import ProjectionModel, Record
from .events import ChangeEvent, ChangeKind
from .messages import Chat, ChatMember, ChatSummary, Message
from .notifications import Notification, NotificationKind
from .posts import Comment, Like, Post
from .profiles import Account, Profile, ProfileSummary

__all__ = [
    "Account",
    "ChangeEvent",
    "ChangeKind",
    "Chat",
    "ChatMember",
    "ChatSummary",
    "Comment",
    "Like",
    "Message",
    "Notification",
    "NotificationKind",
    "Post",
    "Profile",
    "ProfileSummary",
    "ProjectionModel",
    "Record",
]
