"""Message-related data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .users import User


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class ParentType(str, Enum):
    """Kind of thread a message belongs to."""

    CONVERSATION = "conversation"
    ROOM = "room"


@dataclass
class Attachment:
    """File metadata attached to an image/file message."""

    file_url: str
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    id: str | None = None


@dataclass
class ReadReceipt:
    user_id: str
    read_at: datetime


@dataclass
class Message:
    """A chat message in a conversation or a room."""

    id: str
    sender_id: str
    parent_id: str
    parent_type: ParentType
    content: str | None
    message_type: MessageType = MessageType.TEXT
    attachments: list[Attachment] = field(default_factory=list)
    read_by: list[ReadReceipt] = field(default_factory=list)  # ordered by read_at
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    reply_to_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Resolved references, filled in by storage lookups
    sender: User | None = None
    reply_to: Message | None = None

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)
