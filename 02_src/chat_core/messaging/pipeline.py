"""Message pipeline: validate, persist and fan out chat messages."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..channels import conversation_channel, parent_channel, room_channel, user_channel
from ..config import MESSAGE_MAX_LENGTH, RECENT_MESSAGES_LIMIT, TOMBSTONE_TEXT
from ..errors import NotFoundError, UnauthorizedError, ValidationFailure
from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import (
    Attachment,
    BusMessage,
    Conversation,
    Message,
    MessageType,
    ParentType,
    Room,
    Topic,
)
from ..schemas import MessageOut
from ..state import IConversationService, IRoomService
from ..storage import IStorage

logger = get_logger(__name__)


class IMessagePipeline(Protocol):
    """Send, edit, delete and read chat messages."""

    async def send_message(
        self,
        parent_id: str,
        sender_id: str,
        content: str | None,
        message_type: MessageType | str = MessageType.TEXT,
        *,
        parent_type: ParentType | None = None,
        attachments: list[Attachment] | None = None,
        reply_to_id: str | None = None,
    ) -> Message:
        """Persist a message from an authorized sender and push message:new."""
        ...

    async def mark_read(self, message_id: str, user_id: str) -> Message:
        """Record a read receipt once per user."""
        ...

    async def edit_message(self, message_id: str, new_content: str) -> Message:
        """Replace content and flag the message as edited."""
        ...

    async def soft_delete(self, message_id: str) -> Message:
        """Swap content for the tombstone and flag as deleted."""
        ...

    async def recent_messages(
        self, parent_id: str, limit: int = RECENT_MESSAGES_LIMIT
    ) -> list[Message]:
        """Newest-first non-deleted messages of a conversation or room."""
        ...

    async def unread_count(self, parent_id: str, user_id: str) -> int:
        """Messages in a parent the user neither wrote nor read."""
        ...


def _validate_content(
    content: str | None, message_type: MessageType, attachments: list[Attachment]
) -> str | None:
    content = content.strip() if isinstance(content, str) else content
    if message_type is MessageType.TEXT and not content:
        raise ValidationFailure("Message content is required")
    if message_type in (MessageType.IMAGE, MessageType.FILE) and not attachments:
        raise ValidationFailure("Attachment is required")
    if content and len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationFailure(
            f"Message content must be at most {MESSAGE_MAX_LENGTH} characters"
        )
    return content or None


class MessagePipeline:
    """Persists messages and publishes them to the parent's channel."""

    def __init__(
        self,
        storage: IStorage,
        event_bus: IEventBus,
        conversations: IConversationService,
        rooms: IRoomService,
    ):
        self._storage = storage
        self._event_bus = event_bus
        self._conversations = conversations
        self._rooms = rooms

    async def resolve_parent(
        self,
        parent_id: str,
        user_id: str,
        parent_type: ParentType | None = None,
    ) -> Conversation | Room:
        """Find the conversation or room and check the user may post there."""
        if parent_type in (None, ParentType.CONVERSATION):
            conversation = await self._storage.get_conversation(parent_id)
            if conversation is not None:
                if not conversation.has_participant(user_id):
                    raise UnauthorizedError()
                return conversation

        if parent_type in (None, ParentType.ROOM):
            room = await self._storage.get_room(parent_id)
            if room is not None and room.is_active:
                if not room.is_member(user_id):
                    raise UnauthorizedError()
                return room

        kind = parent_type.value.capitalize() if parent_type else "Conversation or room"
        raise NotFoundError(f"{kind} not found")

    async def get_message(self, message_id: str) -> Message:
        message = await self._storage.get_message(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    async def send_message(
        self,
        parent_id: str,
        sender_id: str,
        content: str | None,
        message_type: MessageType | str = MessageType.TEXT,
        *,
        parent_type: ParentType | None = None,
        attachments: list[Attachment] | None = None,
        reply_to_id: str | None = None,
    ) -> Message:
        try:
            message_type = MessageType(message_type)
        except ValueError as e:
            raise ValidationFailure(f"Invalid message type: {message_type}") from e

        attachments = list(attachments or [])
        content = _validate_content(content, message_type, attachments)
        parent = await self.resolve_parent(parent_id, sender_id, parent_type)
        is_conversation = isinstance(parent, Conversation)

        if reply_to_id:
            target = await self._storage.get_message(reply_to_id)
            if target is None or target.parent_id != parent_id:
                raise ValidationFailure("Reply target is not in this thread")

        message = Message(
            id=str(uuid.uuid4()),
            sender_id=sender_id,
            parent_id=parent_id,
            parent_type=ParentType.CONVERSATION if is_conversation else ParentType.ROOM,
            content=content,
            message_type=message_type,
            attachments=attachments,
            reply_to_id=reply_to_id,
            created_at=datetime.now(timezone.utc),
        )
        await self._storage.save_message(message)

        # Separate atomic step: a failure here leaves stale parent activity only
        if is_conversation:
            await self._conversations.update_last_message(parent_id, message.id)
            recipient = parent.other_participant(sender_id)
            if recipient and recipient != sender_id:
                await self._conversations.increment_unread(parent_id, recipient)
            channels = [conversation_channel(parent_id)] + [
                user_channel(uid) for uid in parent.participant_ids
            ]
        else:
            await self._rooms.update_activity(parent_id)
            channels = [room_channel(parent_id)]

        saved = await self.get_message(message.id)
        logger.info(
            "Message %s sent to %s",
            saved.id,
            parent_id,
            extra={"user_id": sender_id, "channel": channels[0]},
        )

        await self._publish(
            "message:new", {"message": MessageOut.model_validate(saved).dump()}, channels
        )
        return saved

    async def mark_read(self, message_id: str, user_id: str) -> Message:
        message = await self.get_message(message_id)
        if not message.is_read_by(user_id):
            await self._storage.add_read_receipt(
                message_id, user_id, datetime.now(timezone.utc)
            )
            await self._publish(
                "message:read",
                {"messageId": message_id, "userId": user_id},
                [parent_channel(message.parent_type, message.parent_id)],
            )
        return await self.get_message(message_id)

    async def edit_message(self, message_id: str, new_content: str) -> Message:
        message = await self.get_message(message_id)
        if message.is_deleted:
            raise ValidationFailure("Cannot edit a deleted message")

        content = _validate_content(new_content, MessageType.TEXT, message.attachments)
        await self._storage.update_message_content(
            message_id, content, datetime.now(timezone.utc)
        )
        edited = await self.get_message(message_id)
        await self._publish(
            "message:edited",
            {"message": MessageOut.model_validate(edited).dump()},
            [parent_channel(edited.parent_type, edited.parent_id)],
        )
        return edited

    async def soft_delete(self, message_id: str) -> Message:
        message = await self.get_message(message_id)
        if message.is_deleted:
            return message

        await self._storage.soft_delete_message(
            message_id, TOMBSTONE_TEXT, datetime.now(timezone.utc)
        )
        await self._publish(
            "message:deleted",
            {"messageId": message_id, "parentId": message.parent_id},
            [parent_channel(message.parent_type, message.parent_id)],
        )
        return await self.get_message(message_id)

    async def recent_messages(
        self, parent_id: str, limit: int = RECENT_MESSAGES_LIMIT
    ) -> list[Message]:
        return await self._storage.get_recent_messages(parent_id, limit)

    async def unread_count(self, parent_id: str, user_id: str) -> int:
        return await self._storage.count_unread_messages(parent_id, user_id)

    async def _publish(self, event: str, data: dict, channels: list[str]) -> None:
        await self._event_bus.publish(
            BusMessage(
                id=str(uuid.uuid4()),
                topic=Topic.MESSAGE,
                payload={"event": event, "data": data, "channels": channels},
                source="message_pipeline",
                timestamp=datetime.now(timezone.utc),
            )
        )
