"""Room data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..config import ROOM_DEFAULT_MAX_MEMBERS
from .users import User


class RoomRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class RoomCategory(str, Enum):
    ACADEMIC = "academic"
    SOCIAL = "social"
    HOUSING = "housing"
    SPORTS = "sports"
    CLUBS = "clubs"
    GENERAL = "general"


@dataclass
class RoomMember:
    user_id: str
    role: RoomRole = RoomRole.MEMBER
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user: User | None = None


@dataclass
class Room:
    """A multi-member channel with roles and a capacity bound."""

    id: str
    name: str
    owner_id: str
    description: str | None = None
    is_private: bool = False
    invite_code: str | None = None  # only set for private rooms
    members: list[RoomMember] = field(default_factory=list)
    max_members: int = ROOM_DEFAULT_MAX_MEMBERS
    category: RoomCategory = RoomCategory.GENERAL
    is_active: bool = True
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    owner: User | None = None

    def get_member(self, user_id: str) -> RoomMember | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def is_member(self, user_id: str) -> bool:
        return self.get_member(user_id) is not None

    def is_admin_or_owner(self, user_id: str) -> bool:
        member = self.get_member(user_id)
        return member is not None and member.role in (RoomRole.OWNER, RoomRole.ADMIN)

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def is_full(self) -> bool:
        return self.member_count >= self.max_members
