"""Presence tracking for live connections."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import BusMessage, PresenceStatus, Topic, User
from ..storage import IStorage

logger = get_logger(__name__)


class IPresenceTracker(Protocol):
    """Which users are connected right now."""

    async def mark_online(self, user_id: str, connection_id: str | None = None) -> None:
        """Persist online status and broadcast user:online."""
        ...

    async def mark_offline(self, user_id: str, connection_id: str | None = None) -> None:
        """Persist offline status and broadcast user:offline."""
        ...

    def is_online(self, user_id: str) -> bool:
        """In-memory online check."""
        ...

    async def online_users(self) -> list[User]:
        """Users currently marked online in the store."""
        ...

    def clear(self) -> None:
        """Forget in-memory presence without publishing."""
        ...


class PresenceTracker:
    """Toggles global presence on every connect and disconnect.

    Each connection toggles status on its own: a user with two devices
    goes offline as soon as either one disconnects.
    """

    def __init__(self, event_bus: IEventBus, storage: IStorage):
        self._event_bus = event_bus
        self._storage = storage
        self._online: set[str] = set()

    async def mark_online(self, user_id: str, connection_id: str | None = None) -> None:
        """Persist online status and broadcast user:online."""
        self._online.add(user_id)
        await self._transition(user_id, PresenceStatus.ONLINE, connection_id)

    async def mark_offline(self, user_id: str, connection_id: str | None = None) -> None:
        """Persist offline status and broadcast user:offline."""
        self._online.discard(user_id)
        await self._transition(user_id, PresenceStatus.OFFLINE, connection_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    async def online_users(self) -> list[User]:
        return await self._storage.get_online_users()

    def clear(self) -> None:
        self._online.clear()

    async def _transition(
        self, user_id: str, status: PresenceStatus, connection_id: str | None
    ) -> None:
        now = datetime.now(timezone.utc)
        await self._storage.update_user_presence(user_id, status, now)
        logger.info("User %s is %s", user_id, status.value, extra={"user_id": user_id})

        user = await self._storage.get_user(user_id)
        data = {"userId": user_id}
        if status is PresenceStatus.ONLINE and user:
            data["userName"] = user.name

        await self._event_bus.publish(
            BusMessage(
                id=str(uuid.uuid4()),
                topic=Topic.PRESENCE,
                payload={
                    "event": f"user:{status.value}",
                    "data": data,
                    "broadcast": True,
                    "exclude_connection": connection_id,
                },
                source="presence",
                timestamp=now,
            )
        )
