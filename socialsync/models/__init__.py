"""Convenience exports for ORM models."""
from .account import Account
from .chat import Chat, ChatMember, Message
from .notification import Notification
from .post import Comment, Like, Post
from .profile import Profile

__all__ = [
    "Account",
    "Chat",
    "ChatMember",
    "Comment",
    "Like",
    "Message",
    "Notification",
    "Post",
    "Profile",
]
