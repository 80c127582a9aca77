"""Room state: creation, membership, roles and invite codes."""

import secrets
import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..config import (
    INVITE_CODE_ALPHABET,
    INVITE_CODE_ATTEMPTS,
    INVITE_CODE_LENGTH,
    PUBLIC_ROOMS_LIMIT,
    ROOM_DEFAULT_MAX_MEMBERS,
    ROOM_DESCRIPTION_MAX_LENGTH,
    ROOM_MAX_MEMBERS,
    ROOM_MIN_MEMBERS,
    ROOM_NAME_MAX_LENGTH,
)
from ..errors import (
    AlreadyMemberError,
    CapacityExceededError,
    DuplicateNameError,
    NotAMemberError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailure,
)
from ..logging_config import get_logger
from ..models import Room, RoomCategory, RoomMember, RoomRole
from ..storage import IStorage

logger = get_logger(__name__)


class IRoomService(Protocol):
    """Invariants and transitions of multi-member rooms."""

    async def create_room(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        is_private: bool = False,
        max_members: int = ROOM_DEFAULT_MAX_MEMBERS,
        category: str | RoomCategory = RoomCategory.GENERAL,
    ) -> Room:
        """Create a room owned by its creator."""
        ...

    async def get_room(self, room_id: str) -> Room:
        """Get a room or raise NotFoundError."""
        ...

    async def add_member(
        self, room_id: str, user_id: str, role: str | RoomRole = RoomRole.MEMBER
    ) -> Room:
        """Add a member, enforcing uniqueness and capacity."""
        ...

    async def remove_member(self, room_id: str, user_id: str) -> Room:
        ...

    async def update_member_role(
        self, room_id: str, user_id: str, role: str | RoomRole
    ) -> Room:
        ...

    async def is_member(self, room_id: str, user_id: str) -> bool:
        ...

    async def is_admin_or_owner(self, room_id: str, user_id: str) -> bool:
        ...

    async def generate_invite_code(self, room_id: str) -> str:
        """Assign a fresh globally unique invite code."""
        ...

    async def join_room(
        self, room_id: str, user_id: str, invite_code: str | None = None
    ) -> Room:
        ...

    async def join_by_invite_code(self, code: str, user_id: str) -> Room:
        ...

    async def update_activity(self, room_id: str) -> None:
        ...

    async def list_user_rooms(self, user_id: str) -> list[Room]:
        ...

    async def list_public_rooms(
        self, limit: int = PUBLIC_ROOMS_LIMIT, category: str | RoomCategory | None = None
    ) -> list[Room]:
        ...


def _parse_role(role: str | RoomRole) -> RoomRole:
    try:
        return RoomRole(role)
    except ValueError as e:
        raise ValidationFailure(f"Invalid role: {role}") from e


def _parse_category(category: str | RoomCategory) -> RoomCategory:
    try:
        return RoomCategory(category)
    except ValueError as e:
        raise ValidationFailure(f"Invalid category: {category}") from e


def _normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


class RoomService:
    """Room operations over an explicit storage handle.

    Capacity and duplicate-member checks read the room and then insert,
    so two joins racing for the last seat can both succeed. The
    (room, user) primary key still prevents a user appearing twice; the
    losing insert surfaces as AlreadyMemberError.
    """

    def __init__(self, storage: IStorage):
        self._storage = storage

    async def create_room(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        is_private: bool = False,
        max_members: int = ROOM_DEFAULT_MAX_MEMBERS,
        category: str | RoomCategory = RoomCategory.GENERAL,
    ) -> Room:
        name = (name or "").strip()
        if not name or len(name) > ROOM_NAME_MAX_LENGTH:
            raise ValidationFailure(
                f"Room name must be 1-{ROOM_NAME_MAX_LENGTH} characters"
            )

        description = description.strip() if description else None
        if description and len(description) > ROOM_DESCRIPTION_MAX_LENGTH:
            raise ValidationFailure(
                f"Description must be at most {ROOM_DESCRIPTION_MAX_LENGTH} characters"
            )

        if not ROOM_MIN_MEMBERS <= max_members <= ROOM_MAX_MEMBERS:
            raise ValidationFailure(
                f"Capacity must be between {ROOM_MIN_MEMBERS} and {ROOM_MAX_MEMBERS}"
            )

        now = datetime.now(timezone.utc)
        room = Room(
            id=str(uuid.uuid4()),
            name=name,
            owner_id=owner_id,
            description=description,
            is_private=bool(is_private),
            max_members=max_members,
            category=_parse_category(category),
            last_activity=now,
            created_at=now,
        )
        await self._storage.create_room(room)
        logger.info("Room %s created by %s", room.id, owner_id, extra={"user_id": owner_id})

        if room.is_private:
            await self.generate_invite_code(room.id)

        return await self.get_room(room.id)

    async def get_room(self, room_id: str) -> Room:
        room = await self._storage.get_room(room_id)
        if room is None:
            raise NotFoundError("Room not found")
        return room

    async def get_active_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if not room.is_active:
            raise NotFoundError("Room not found")
        return room

    async def add_member(
        self, room_id: str, user_id: str, role: str | RoomRole = RoomRole.MEMBER
    ) -> Room:
        role = _parse_role(role)
        room = await self.get_room(room_id)

        if room.is_member(user_id):
            raise AlreadyMemberError()
        if room.is_full:
            raise CapacityExceededError()

        await self._storage.add_room_member(
            room_id, RoomMember(user_id=user_id, role=role)
        )
        return await self.get_room(room_id)

    async def remove_member(self, room_id: str, user_id: str) -> Room:
        await self.get_room(room_id)
        if not await self._storage.remove_room_member(room_id, user_id):
            raise NotAMemberError()
        return await self.get_room(room_id)

    async def update_member_role(
        self, room_id: str, user_id: str, role: str | RoomRole
    ) -> Room:
        role = _parse_role(role)
        await self.get_room(room_id)
        if not await self._storage.update_room_member_role(room_id, user_id, role):
            raise NotAMemberError()
        return await self.get_room(room_id)

    async def is_member(self, room_id: str, user_id: str) -> bool:
        room = await self._storage.get_room(room_id)
        return room is not None and room.is_member(user_id)

    async def is_admin_or_owner(self, room_id: str, user_id: str) -> bool:
        room = await self._storage.get_room(room_id)
        return room is not None and room.is_admin_or_owner(user_id)

    async def get_for_member(self, room_id: str, user_id: str) -> Room:
        """Active room the user belongs to, else raise."""
        room = await self._storage.get_room(room_id)
        if room is None or not room.is_active or not room.is_member(user_id):
            raise UnauthorizedError()
        return room

    async def generate_invite_code(self, room_id: str) -> str:
        await self.get_room(room_id)

        for _ in range(INVITE_CODE_ATTEMPTS):
            code = "".join(
                secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH)
            )
            if await self._storage.invite_code_exists(code):
                continue
            try:
                await self._storage.set_room_invite_code(room_id, code)
            except DuplicateNameError:
                # Taken between the check and the write
                continue
            return code

        raise DuplicateNameError("Could not generate a unique invite code")

    async def regenerate_invite_code(self, room_id: str, requester_id: str) -> str:
        room = await self.get_active_room(room_id)
        if not room.is_admin_or_owner(requester_id):
            raise UnauthorizedError()
        if not room.is_private:
            raise ValidationFailure("Only private rooms have invite codes")
        return await self.generate_invite_code(room_id)

    async def join_room(
        self, room_id: str, user_id: str, invite_code: str | None = None
    ) -> Room:
        room = await self.get_active_room(room_id)
        if room.is_member(user_id):
            return room
        if room.is_private and _normalize_code(invite_code) != room.invite_code:
            raise UnauthorizedError()
        try:
            return await self.add_member(room_id, user_id)
        except AlreadyMemberError:
            # Joined concurrently from another connection
            return await self.get_room(room_id)

    async def join_by_invite_code(self, code: str, user_id: str) -> Room:
        room = await self._storage.get_room_by_invite_code(_normalize_code(code))
        if room is None or not room.is_active or not room.is_private:
            raise NotFoundError("Invalid invite code")
        return await self.join_room(room.id, user_id, room.invite_code)

    async def leave_room(self, room_id: str, user_id: str) -> Room:
        return await self.remove_member(room_id, user_id)

    async def deactivate_room(self, room_id: str, requester_id: str) -> None:
        room = await self.get_active_room(room_id)
        if room.owner_id != requester_id:
            raise UnauthorizedError()
        await self._storage.set_room_active(room_id, False)
        logger.info("Room %s deactivated", room_id, extra={"user_id": requester_id})

    async def update_activity(self, room_id: str) -> None:
        await self._storage.update_room_activity(room_id, datetime.now(timezone.utc))

    async def list_user_rooms(self, user_id: str) -> list[Room]:
        rooms = await self._storage.get_user_rooms(user_id)
        await self._resolve_owners(rooms)
        return rooms

    async def list_public_rooms(
        self, limit: int = PUBLIC_ROOMS_LIMIT, category: str | RoomCategory | None = None
    ) -> list[Room]:
        rooms = await self._storage.get_public_rooms(
            limit=limit,
            category=_parse_category(category) if category else None,
        )
        await self._resolve_owners(rooms)
        return rooms

    async def _resolve_owners(self, rooms: list[Room]) -> None:
        users = await self._storage.get_users([room.owner_id for room in rooms])
        for room in rooms:
            room.owner = users.get(room.owner_id)
