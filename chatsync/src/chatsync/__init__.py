"""Chat sync service interfaces and helpers."""

from .errors import AuthError, ChatSyncError, NotFoundError, ReadError, ValidationError, WriteError
from .hub import LiveFeed, Subscription, SubscriptionGroup, SubscriptionHub
from .identity import resolve
from .models import ConversationSummary, Message, PresenceRecord, User
from .server import main, simulate
from .service import ChatContext, ChatService

__all__ = [
    "AuthError",
    "ChatContext",
    "ChatService",
    "ChatSyncError",
    "ConversationSummary",
    "LiveFeed",
    "Message",
    "NotFoundError",
    "PresenceRecord",
    "ReadError",
    "Subscription",
    "SubscriptionGroup",
    "SubscriptionHub",
    "User",
    "ValidationError",
    "WriteError",
    "main",
    "resolve",
    "simulate",
]
