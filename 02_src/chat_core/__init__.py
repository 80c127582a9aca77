"""Core module."""

from .app import Application, IApplication
from .event_bus import EventBus, IEventBus
from .gateway import Connection, ConnectionTable, Gateway, IGateway
from .identity import IIdentityVerifier, Identity, JWTIdentityVerifier
from .messaging import IMessagePipeline, MessagePipeline
from .models import (
    Attachment,
    BusMessage,
    Conversation,
    Message,
    Room,
    RoomMember,
    Topic,
    TraceEvent,
    User,
)
from .presence import IPresenceTracker, PresenceTracker
from .state import (
    ConversationService,
    IConversationService,
    IRoomService,
    ITypingRegistry,
    RoomService,
    TypingRegistry,
)
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    # Models
    "User",
    "Conversation",
    "Room",
    "RoomMember",
    "Message",
    "Attachment",
    "BusMessage",
    "Topic",
    "TraceEvent",
    # Components
    "IStorage",
    "Storage",
    "IEventBus",
    "EventBus",
    "ITracker",
    "Tracker",
    "IIdentityVerifier",
    "Identity",
    "JWTIdentityVerifier",
    "IPresenceTracker",
    "PresenceTracker",
    "IConversationService",
    "ConversationService",
    "IRoomService",
    "RoomService",
    "ITypingRegistry",
    "TypingRegistry",
    "IMessagePipeline",
    "MessagePipeline",
    "IGateway",
    "Gateway",
    "Connection",
    "ConnectionTable",
]
