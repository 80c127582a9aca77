"""Outbound wire schemas (camelCase JSON)."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import (
    Conversation,
    MessageType,
    ParentType,
    PresenceStatus,
    Room,
    RoomCategory,
    RoomRole,
)


class WireModel(BaseModel):
    """Base for payloads sent to clients."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class UserOut(WireModel):
    id: str
    name: str
    handle: str
    status: PresenceStatus
    last_seen: datetime


class AttachmentOut(WireModel):
    file_url: str
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None


class ReadReceiptOut(WireModel):
    user_id: str
    read_at: datetime


class ReplyOut(WireModel):
    """Reply target as shown under a message (deleted ones show the tombstone)."""

    id: str
    sender_id: str
    content: str | None
    is_deleted: bool


class MessageOut(WireModel):
    id: str
    sender_id: str
    sender: UserOut | None = None
    parent_id: str
    parent_type: ParentType
    content: str | None
    message_type: MessageType
    attachments: list[AttachmentOut] = []
    read_by: list[ReadReceiptOut] = []
    is_edited: bool
    edited_at: datetime | None = None
    is_deleted: bool
    deleted_at: datetime | None = None
    reply_to_id: str | None = None
    reply_to: ReplyOut | None = None
    created_at: datetime


class UnreadCountOut(WireModel):
    user_id: str
    count: int


class ConversationOut(WireModel):
    """A conversation as seen by one of its participants."""

    id: str
    participant_ids: list[str]
    participants: list[UserOut] = []
    last_message_id: str | None = None
    last_message: MessageOut | None = None
    last_message_at: datetime
    unread_counts: list[UnreadCountOut] = []
    unread_count: int = 0
    archived: bool = False
    pinned: bool = False
    typing_users: list[str] = []
    created_at: datetime

    @classmethod
    def from_conversation(
        cls,
        conversation: Conversation,
        viewer_id: str,
        typing_users: Iterable[str] = (),
    ) -> ConversationOut:
        return cls(
            id=conversation.id,
            participant_ids=list(conversation.participant_ids),
            participants=[UserOut.model_validate(u) for u in conversation.participants],
            last_message_id=conversation.last_message_id,
            last_message=(
                MessageOut.model_validate(conversation.last_message)
                if conversation.last_message
                else None
            ),
            last_message_at=conversation.last_message_at,
            unread_counts=[
                UnreadCountOut(user_id=uid, count=conversation.unread_count_for(uid))
                for uid in conversation.participant_ids
            ],
            unread_count=conversation.unread_count_for(viewer_id),
            archived=conversation.is_archived_for(viewer_id),
            pinned=conversation.is_pinned_for(viewer_id),
            typing_users=sorted(typing_users),
            created_at=conversation.created_at,
        )


class RoomMemberOut(WireModel):
    user_id: str
    role: RoomRole
    joined_at: datetime


class RoomOut(WireModel):
    id: str
    name: str
    owner_id: str
    owner: UserOut | None = None
    description: str | None = None
    is_private: bool
    invite_code: str | None = None
    members: list[RoomMemberOut] = []
    member_count: int
    max_members: int
    category: RoomCategory
    is_active: bool
    last_activity: datetime
    created_at: datetime

    @classmethod
    def from_room(cls, room: Room, include_invite_code: bool = False) -> RoomOut:
        out = cls.model_validate(room)
        if not include_invite_code:
            out.invite_code = None
        return out
