"""Conversation data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from .messages import Message
from .users import User


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Order a participant pair so (A, B) and (B, A) share one key."""
    first, second = sorted((user_a, user_b))
    return first, second


@dataclass
class ParticipantState:
    """Per-participant derived state of a conversation."""

    user_id: str
    unread_count: int = 0
    archived: bool = False
    pinned: bool = False


@dataclass
class Conversation:
    """A direct thread between exactly two users."""

    id: str
    participant_ids: tuple[str, str]
    states: dict[str, ParticipantState] = field(default_factory=dict)
    last_message_id: str | None = None
    last_message_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Resolved references
    participants: list[User] = field(default_factory=list)
    last_message: Message | None = None

    def __post_init__(self) -> None:
        if len(self.participant_ids) != 2 or self.participant_ids[0] == self.participant_ids[1]:
            raise ValueError("Conversation must have exactly 2 participants")
        self.participant_ids = canonical_pair(*self.participant_ids)
        for user_id in self.participant_ids:
            self.states.setdefault(user_id, ParticipantState(user_id=user_id))

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def other_participant(self, user_id: str) -> str | None:
        if not self.has_participant(user_id):
            return None
        first, second = self.participant_ids
        return second if first == user_id else first

    def unread_count_for(self, user_id: str) -> int:
        state = self.states.get(user_id)
        return state.unread_count if state else 0

    def is_archived_for(self, user_id: str) -> bool:
        state = self.states.get(user_id)
        return state.archived if state else False

    def is_pinned_for(self, user_id: str) -> bool:
        state = self.states.get(user_id)
        return state.pinned if state else False
