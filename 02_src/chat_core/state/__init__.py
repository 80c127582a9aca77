"""Conversation/room state engine."""

from .conversations import (
    ConversationService,
    IConversationService,
    get_other_participant,
    is_archived_for_user,
    is_pinned_for_user,
)
from .rooms import IRoomService, RoomService
from .typing_state import ITypingRegistry, TypingRegistry
from .users import IUserService, UserService

__all__ = [
    "ConversationService",
    "IConversationService",
    "IRoomService",
    "RoomService",
    "ITypingRegistry",
    "TypingRegistry",
    "IUserService",
    "UserService",
    "get_other_participant",
    "is_archived_for_user",
    "is_pinned_for_user",
]
