"""Core data models for the chat backend."""

from .bus import BusMessage, Topic
from .conversations import Conversation, ParticipantState, canonical_pair
from .messages import Attachment, Message, MessageType, ParentType, ReadReceipt
from .rooms import Room, RoomCategory, RoomMember, RoomRole
from .tracing import TraceEvent
from .users import PresenceStatus, User

__all__ = [
    # Users
    "User",
    "PresenceStatus",
    # Conversations
    "Conversation",
    "ParticipantState",
    "canonical_pair",
    # Rooms
    "Room",
    "RoomMember",
    "RoomRole",
    "RoomCategory",
    # Messages
    "Message",
    "MessageType",
    "ParentType",
    "Attachment",
    "ReadReceipt",
    # Bus
    "BusMessage",
    "Topic",
    # Tracing
    "TraceEvent",
]
