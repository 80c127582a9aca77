"""Transient typing indicators."""

from typing import Protocol


class ITypingRegistry(Protocol):
    """Who is typing where. Held in memory only."""

    def set_typing(self, channel_id: str, user_id: str, is_typing: bool) -> bool:
        """Add or remove a user. Returns True when the set changed."""
        ...

    def typing_users(self, channel_id: str) -> set[str]:
        """Users currently typing in a conversation or room."""
        ...

    def clear(self) -> None:
        ...


class TypingRegistry:
    """Per conversation/room typing sets.

    Nothing expires here; entries leave only on an explicit stop and the
    registry starts empty after a restart.
    """

    def __init__(self):
        self._typing: dict[str, set[str]] = {}

    def set_typing(self, channel_id: str, user_id: str, is_typing: bool) -> bool:
        users = self._typing.setdefault(channel_id, set())
        if is_typing:
            if user_id in users:
                return False
            users.add(user_id)
            return True

        if user_id not in users:
            return False
        users.discard(user_id)
        if not users:
            del self._typing[channel_id]
        return True

    def typing_users(self, channel_id: str) -> set[str]:
        return set(self._typing.get(channel_id, ()))

    def clear(self) -> None:
        self._typing.clear()
