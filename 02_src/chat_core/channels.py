"""Broadcast channel names."""

from .models import ParentType


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def room_channel(room_id: str) -> str:
    return f"room:{room_id}"


def parent_channel(parent_type: ParentType, parent_id: str) -> str:
    if parent_type is ParentType.CONVERSATION:
        return conversation_channel(parent_id)
    return room_channel(parent_id)
