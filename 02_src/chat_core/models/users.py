"""User-related data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class PresenceStatus(str, Enum):
    """Global presence of a user."""

    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class User:
    """A registered chat user."""

    id: str
    email: str
    name: str
    handle: str  # lowercase local part of the email
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def public_profile(self) -> dict:
        """Fields safe to show to other users."""
        return {
            "id": self.id,
            "name": self.name,
            "handle": self.handle,
            "status": self.status.value,
            "last_seen": self.last_seen,
        }
