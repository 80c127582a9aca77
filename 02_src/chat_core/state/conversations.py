"""Conversation state: lookup, unread counters and per-user flags."""

from datetime import datetime, timezone
from typing import Protocol

from ..errors import NotFoundError, UnauthorizedError, ValidationFailure
from ..logging_config import get_logger
from ..models import Conversation
from ..storage import IStorage

logger = get_logger(__name__)


class IConversationService(Protocol):
    """Invariants and derived-state transitions of direct conversations."""

    async def find_or_create(self, user_a: str, user_b: str) -> Conversation:
        """Return the one conversation of a user pair, creating it on first contact."""
        ...

    async def get(self, conversation_id: str) -> Conversation:
        """Get a conversation or raise NotFoundError."""
        ...

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """Get a conversation the user takes part in, else raise."""
        ...

    async def update_last_message(self, conversation_id: str, message_id: str) -> None:
        """Set last message reference and activity timestamp."""
        ...

    async def increment_unread(self, conversation_id: str, user_id: str) -> None:
        ...

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        ...

    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        ...

    async def total_unread_count(self, user_id: str) -> int:
        ...

    async def set_archived(self, conversation_id: str, user_id: str, archived: bool) -> None:
        ...

    async def set_pinned(self, conversation_id: str, user_id: str, pinned: bool) -> None:
        ...

    async def list_conversations(
        self, user_id: str, include_archived: bool = False
    ) -> list[Conversation]:
        """User's conversations: pinned first, then by last activity."""
        ...


def is_archived_for_user(conversation: Conversation, user_id: str) -> bool:
    return conversation.is_archived_for(user_id)


def is_pinned_for_user(conversation: Conversation, user_id: str) -> bool:
    return conversation.is_pinned_for(user_id)


def get_other_participant(conversation: Conversation, user_id: str) -> str | None:
    return conversation.other_participant(user_id)


class ConversationService:
    """Conversation operations over an explicit storage handle."""

    def __init__(self, storage: IStorage):
        self._storage = storage

    async def find_or_create(self, user_a: str, user_b: str) -> Conversation:
        if not user_a or not user_b:
            raise ValidationFailure("Both participants are required")
        if user_a == user_b:
            raise ValidationFailure("Cannot start a conversation with yourself")

        users = await self._storage.get_users([user_a, user_b])
        for user_id in (user_a, user_b):
            if user_id not in users:
                raise NotFoundError(f"User not found: {user_id}")

        conversation = await self._storage.find_or_create_conversation(user_a, user_b)
        conversation.participants = [users[uid] for uid in conversation.participant_ids]
        if conversation.last_message_id:
            conversation.last_message = await self._storage.get_message(
                conversation.last_message_id
            )
        return conversation

    async def get(self, conversation_id: str) -> Conversation:
        conversation = await self._storage.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.get(conversation_id)
        if not conversation.has_participant(user_id):
            raise UnauthorizedError()
        return conversation

    async def is_participant(self, conversation_id: str, user_id: str) -> bool:
        conversation = await self._storage.get_conversation(conversation_id)
        return conversation is not None and conversation.has_participant(user_id)

    async def update_last_message(self, conversation_id: str, message_id: str) -> None:
        await self._storage.update_conversation_last_message(
            conversation_id, message_id, datetime.now(timezone.utc)
        )

    async def increment_unread(self, conversation_id: str, user_id: str) -> None:
        await self.get_for_participant(conversation_id, user_id)
        await self._storage.increment_unread(conversation_id, user_id)

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        await self.get_for_participant(conversation_id, user_id)
        await self._storage.reset_unread(conversation_id, user_id)

    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        conversation = await self.get(conversation_id)
        return conversation.unread_count_for(user_id)

    async def total_unread_count(self, user_id: str) -> int:
        return await self._storage.get_total_unread(user_id)

    async def set_archived(self, conversation_id: str, user_id: str, archived: bool) -> None:
        await self.get_for_participant(conversation_id, user_id)
        await self._storage.set_conversation_flag(
            conversation_id, user_id, "archived", archived
        )

    async def set_pinned(self, conversation_id: str, user_id: str, pinned: bool) -> None:
        await self.get_for_participant(conversation_id, user_id)
        await self._storage.set_conversation_flag(conversation_id, user_id, "pinned", pinned)

    async def list_conversations(
        self, user_id: str, include_archived: bool = False
    ) -> list[Conversation]:
        conversations = await self._storage.get_user_conversations(user_id)
        if not include_archived:
            conversations = [c for c in conversations if not c.is_archived_for(user_id)]

        # Stable sort keeps last-activity order inside each group
        conversations.sort(key=lambda c: not c.is_pinned_for(user_id))

        user_ids = [uid for c in conversations for uid in c.participant_ids]
        users = await self._storage.get_users(user_ids)
        last_messages = await self._storage.get_messages(
            [c.last_message_id for c in conversations if c.last_message_id]
        )
        for conversation in conversations:
            conversation.participants = [
                users[uid] for uid in conversation.participant_ids if uid in users
            ]
            if conversation.last_message_id:
                conversation.last_message = last_messages.get(conversation.last_message_id)

        return conversations
