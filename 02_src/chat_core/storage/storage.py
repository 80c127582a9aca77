"""SQLite storage implementation."""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import AlreadyMemberError, DuplicateNameError
from ..models import (
    Attachment,
    BusMessage,
    Conversation,
    Message,
    MessageType,
    ParentType,
    ParticipantState,
    PresenceStatus,
    ReadReceipt,
    Room,
    RoomCategory,
    RoomMember,
    RoomRole,
    Topic,
    TraceEvent,
    User,
    canonical_pair,
)

_USER_COLUMNS = "id, email, name, handle, status, last_seen, created_at"
_ROOM_COLUMNS = (
    "id, name, owner_id, description, is_private, invite_code, max_members, "
    "category, is_active, last_activity, created_at"
)
_MESSAGE_COLUMNS = (
    "id, sender_id, parent_id, parent_type, content, message_type, is_edited, "
    "edited_at, is_deleted, deleted_at, reply_to_id, created_at"
)
_CONVERSATION_COLUMNS = (
    "id, participant_a, participant_b, last_message_id, last_message_at, created_at"
)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IStorage(Protocol):
    """Persistent storage for users, conversations, rooms and messages (SQLite)."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Users
    async def save_user(self, user: User) -> None:
        """Insert or replace a user."""
        ...

    async def upsert_user(self, email: str, name: str, handle: str) -> User:
        """Create a user keyed by email, or refresh its name."""
        ...

    async def get_user(self, user_id: str) -> User | None:
        """Get a user by ID."""
        ...

    async def get_user_by_email(self, email: str) -> User | None:
        """Get a user by email."""
        ...

    async def get_users(self, user_ids: list[str]) -> dict[str, User]:
        """Get several users keyed by ID."""
        ...

    async def update_user_presence(
        self, user_id: str, status: PresenceStatus, last_seen: datetime
    ) -> None:
        """Set status and last-seen timestamp."""
        ...

    async def get_online_users(self) -> list[User]:
        """Users whose stored status is online."""
        ...

    # Conversations
    async def find_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Atomic upsert on the participant pair."""
        ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with both participant states."""
        ...

    async def get_user_conversations(self, user_id: str) -> list[Conversation]:
        """Conversations containing the user, last activity first."""
        ...

    async def update_conversation_last_message(
        self, conversation_id: str, message_id: str, at: datetime
    ) -> None:
        """Set last-message reference and timestamp."""
        ...

    async def increment_unread(self, conversation_id: str, user_id: str) -> None:
        """Add one to a participant's unread counter."""
        ...

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        """Zero a participant's unread counter."""
        ...

    async def set_conversation_flag(
        self, conversation_id: str, user_id: str, flag: str, value: bool
    ) -> None:
        """Set the archived or pinned flag for a participant."""
        ...

    async def get_total_unread(self, user_id: str) -> int:
        """Sum of the user's unread counters."""
        ...

    # Rooms
    async def create_room(self, room: Room) -> None:
        """Insert a room; the owner becomes its first member."""
        ...

    async def get_room(self, room_id: str) -> Room | None:
        """Get a room with its members."""
        ...

    async def get_room_by_invite_code(self, code: str) -> Room | None:
        """Get a room by invite code."""
        ...

    async def invite_code_exists(self, code: str) -> bool:
        """Check whether an invite code is taken."""
        ...

    async def set_room_invite_code(self, room_id: str, code: str) -> None:
        """Assign an invite code."""
        ...

    async def get_user_rooms(self, user_id: str) -> list[Room]:
        """Active rooms the user belongs to, last activity first."""
        ...

    async def get_public_rooms(
        self, limit: int = 20, category: RoomCategory | None = None
    ) -> list[Room]:
        """Active public rooms, last activity first."""
        ...

    async def add_room_member(self, room_id: str, member: RoomMember) -> None:
        """Insert a member row."""
        ...

    async def remove_room_member(self, room_id: str, user_id: str) -> bool:
        """Delete a member row. Returns False when absent."""
        ...

    async def update_room_member_role(
        self, room_id: str, user_id: str, role: RoomRole
    ) -> bool:
        """Change a member's role. Returns False when absent."""
        ...

    async def update_room_activity(self, room_id: str, at: datetime) -> None:
        """Set the last-activity timestamp."""
        ...

    async def set_room_active(self, room_id: str, active: bool) -> None:
        """Toggle the soft-deactivation flag."""
        ...

    # Messages
    async def save_message(self, message: Message) -> None:
        """Insert a message with its attachments."""
        ...

    async def get_message(self, message_id: str) -> Message | None:
        """Get a message (deleted ones included) with references resolved."""
        ...

    async def get_messages(self, message_ids: list[str]) -> dict[str, Message]:
        """Get several messages keyed by ID."""
        ...

    async def get_recent_messages(self, parent_id: str, limit: int = 50) -> list[Message]:
        """Non-deleted messages of a parent, newest first."""
        ...

    async def add_read_receipt(self, message_id: str, user_id: str, at: datetime) -> None:
        """Record a read once per user."""
        ...

    async def update_message_content(
        self, message_id: str, content: str, edited_at: datetime
    ) -> None:
        """Replace content and mark edited."""
        ...

    async def soft_delete_message(
        self, message_id: str, tombstone: str, deleted_at: datetime
    ) -> None:
        """Replace content with the tombstone and mark deleted."""
        ...

    async def count_unread_messages(self, parent_id: str, user_id: str) -> int:
        """Messages not sent and not yet read by the user, deleted excluded."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        ...

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        # Serializes multi-statement writes on the shared connection
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _db(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    # Users
    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row[0],
            email=row[1],
            name=row[2],
            handle=row[3],
            status=PresenceStatus(row[4]),
            last_seen=_parse(row[5]),
            created_at=_parse(row[6]),
        )

    async def save_user(self, user: User) -> None:
        """Insert or replace a user."""
        conn = self._db()
        try:
            await conn.execute(
                f"""
                INSERT OR REPLACE INTO users ({_USER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.email,
                    user.name,
                    user.handle,
                    user.status.value,
                    _iso(user.last_seen),
                    _iso(user.created_at),
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise DuplicateNameError(f"User handle or email already taken: {e}") from e

    async def upsert_user(self, email: str, name: str, handle: str) -> User:
        """Create a user keyed by email, or refresh its name."""
        conn = self._db()
        now = _iso(datetime.now(timezone.utc))
        try:
            await conn.execute(
                f"""
                INSERT INTO users ({_USER_COLUMNS})
                VALUES (?, ?, ?, ?, 'offline', ?, ?)
                ON CONFLICT (email) DO UPDATE SET name = excluded.name
                """,
                (str(uuid.uuid4()), email, name, handle, now, now),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise DuplicateNameError(f"Handle already taken: {handle}") from e

        cursor = await conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,)
        )
        row = await cursor.fetchone()
        return self._row_to_user(row)

    async def get_user(self, user_id: str) -> User | None:
        """Get a user by ID."""
        cursor = await self._db().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> User | None:
        """Get a user by email."""
        cursor = await self._db().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,)
        )
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def get_users(self, user_ids: list[str]) -> dict[str, User]:
        """Get several users keyed by ID."""
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        cursor = await self._db().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id IN ({placeholders})", ids
        )
        rows = await cursor.fetchall()
        return {row[0]: self._row_to_user(row) for row in rows}

    async def update_user_presence(
        self, user_id: str, status: PresenceStatus, last_seen: datetime
    ) -> None:
        """Set status and last-seen timestamp."""
        conn = self._db()
        await conn.execute(
            "UPDATE users SET status = ?, last_seen = ? WHERE id = ?",
            (status.value, _iso(last_seen), user_id),
        )
        await conn.commit()

    async def get_online_users(self) -> list[User]:
        """Users whose stored status is online."""
        cursor = await self._db().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE status = 'online' ORDER BY name"
        )
        return [self._row_to_user(row) for row in await cursor.fetchall()]

    # Conversations
    async def _load_conversations(self, rows) -> list[Conversation]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        placeholders = ",".join("?" * len(ids))
        cursor = await self._db().execute(
            f"""
            SELECT conversation_id, user_id, unread_count, archived, pinned
            FROM conversation_states
            WHERE conversation_id IN ({placeholders})
            """,
            ids,
        )
        states: dict[str, dict[str, ParticipantState]] = {}
        for state_row in await cursor.fetchall():
            states.setdefault(state_row[0], {})[state_row[1]] = ParticipantState(
                user_id=state_row[1],
                unread_count=state_row[2],
                archived=bool(state_row[3]),
                pinned=bool(state_row[4]),
            )

        return [
            Conversation(
                id=row[0],
                participant_ids=(row[1], row[2]),
                states=states.get(row[0], {}),
                last_message_id=row[3],
                last_message_at=_parse(row[4]),
                created_at=_parse(row[5]),
            )
            for row in rows
        ]

    async def find_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Atomic upsert on the participant pair.

        The UNIQUE pair constraint decides concurrent races: the losing
        insert is ignored and both callers read back the surviving row.
        """
        if user_a == user_b:
            raise ValueError("Conversation must have exactly 2 participants")

        conn = self._db()
        first, second = canonical_pair(user_a, user_b)
        now = _iso(datetime.now(timezone.utc))

        async with self._write_lock:
            await conn.execute(
                f"""
                INSERT OR IGNORE INTO conversations ({_CONVERSATION_COLUMNS})
                VALUES (?, ?, ?, NULL, ?, ?)
                """,
                (str(uuid.uuid4()), first, second, now, now),
            )
            await conn.commit()

        cursor = await conn.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE participant_a = ? AND participant_b = ?
            """,
            (first, second),
        )
        row = await cursor.fetchone()
        return (await self._load_conversations([row]))[0]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with both participant states."""
        cursor = await self._db().execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._load_conversations([row]))[0]

    async def get_user_conversations(self, user_id: str) -> list[Conversation]:
        """Conversations containing the user, last activity first."""
        cursor = await self._db().execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE participant_a = ? OR participant_b = ?
            ORDER BY last_message_at DESC, rowid DESC
            """,
            (user_id, user_id),
        )
        return await self._load_conversations(await cursor.fetchall())

    async def update_conversation_last_message(
        self, conversation_id: str, message_id: str, at: datetime
    ) -> None:
        """Set last-message reference and timestamp."""
        conn = self._db()
        await conn.execute(
            """
            UPDATE conversations SET last_message_id = ?, last_message_at = ?
            WHERE id = ?
            """,
            (message_id, _iso(at), conversation_id),
        )
        await conn.commit()

    async def increment_unread(self, conversation_id: str, user_id: str) -> None:
        """Add one to a participant's unread counter."""
        conn = self._db()
        await conn.execute(
            """
            UPDATE conversation_states SET unread_count = unread_count + 1
            WHERE conversation_id = ? AND user_id = ?
            """,
            (conversation_id, user_id),
        )
        await conn.commit()

    async def reset_unread(self, conversation_id: str, user_id: str) -> None:
        """Zero a participant's unread counter."""
        conn = self._db()
        await conn.execute(
            """
            UPDATE conversation_states SET unread_count = 0
            WHERE conversation_id = ? AND user_id = ?
            """,
            (conversation_id, user_id),
        )
        await conn.commit()

    async def set_conversation_flag(
        self, conversation_id: str, user_id: str, flag: str, value: bool
    ) -> None:
        """Set the archived or pinned flag for a participant."""
        if flag not in ("archived", "pinned"):
            raise ValueError(f"Unknown conversation flag: {flag}")

        conn = self._db()
        await conn.execute(
            f"""
            UPDATE conversation_states SET {flag} = ?
            WHERE conversation_id = ? AND user_id = ?
            """,
            (int(value), conversation_id, user_id),
        )
        await conn.commit()

    async def get_total_unread(self, user_id: str) -> int:
        """Sum of the user's unread counters."""
        cursor = await self._db().execute(
            "SELECT COALESCE(SUM(unread_count), 0) FROM conversation_states WHERE user_id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        return int(row[0])

    # Rooms
    async def _load_rooms(self, rows) -> list[Room]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        placeholders = ",".join("?" * len(ids))
        cursor = await self._db().execute(
            f"""
            SELECT room_id, user_id, role, joined_at
            FROM room_members
            WHERE room_id IN ({placeholders})
            ORDER BY joined_at ASC, rowid ASC
            """,
            ids,
        )
        members: dict[str, list[RoomMember]] = {}
        for member_row in await cursor.fetchall():
            members.setdefault(member_row[0], []).append(
                RoomMember(
                    user_id=member_row[1],
                    role=RoomRole(member_row[2]),
                    joined_at=_parse(member_row[3]),
                )
            )

        return [
            Room(
                id=row[0],
                name=row[1],
                owner_id=row[2],
                description=row[3],
                is_private=bool(row[4]),
                invite_code=row[5],
                members=members.get(row[0], []),
                max_members=row[6],
                category=RoomCategory(row[7]),
                is_active=bool(row[8]),
                last_activity=_parse(row[9]),
                created_at=_parse(row[10]),
            )
            for row in rows
        ]

    async def create_room(self, room: Room) -> None:
        """Insert a room; the owner becomes its first member."""
        conn = self._db()
        try:
            await conn.execute(
                f"""
                INSERT INTO rooms ({_ROOM_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    room.id,
                    room.name,
                    room.owner_id,
                    room.description,
                    int(room.is_private),
                    room.invite_code,
                    room.max_members,
                    room.category.value,
                    int(room.is_active),
                    _iso(room.last_activity),
                    _iso(room.created_at),
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise DuplicateNameError(f"Room name already taken: {room.name}") from e

    async def get_room(self, room_id: str) -> Room | None:
        """Get a room with its members."""
        cursor = await self._db().execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = ?", (room_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._load_rooms([row]))[0]

    async def get_room_by_invite_code(self, code: str) -> Room | None:
        """Get a room by invite code."""
        cursor = await self._db().execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE invite_code = ?", (code,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._load_rooms([row]))[0]

    async def invite_code_exists(self, code: str) -> bool:
        """Check whether an invite code is taken."""
        cursor = await self._db().execute(
            "SELECT 1 FROM rooms WHERE invite_code = ?", (code,)
        )
        return await cursor.fetchone() is not None

    async def set_room_invite_code(self, room_id: str, code: str) -> None:
        """Assign an invite code."""
        conn = self._db()
        try:
            await conn.execute(
                "UPDATE rooms SET invite_code = ? WHERE id = ?", (code, room_id)
            )
            await conn.commit()
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise DuplicateNameError(f"Invite code already taken: {code}") from e

    async def get_user_rooms(self, user_id: str) -> list[Room]:
        """Active rooms the user belongs to, last activity first."""
        cursor = await self._db().execute(
            f"""
            SELECT {", ".join("r." + c.strip() for c in _ROOM_COLUMNS.split(","))}
            FROM rooms r
            JOIN room_members m ON m.room_id = r.id
            WHERE m.user_id = ? AND r.is_active = 1
            ORDER BY r.last_activity DESC
            """,
            (user_id,),
        )
        return await self._load_rooms(await cursor.fetchall())

    async def get_public_rooms(
        self, limit: int = 20, category: RoomCategory | None = None
    ) -> list[Room]:
        """Active public rooms, last activity first."""
        conditions = ["is_private = 0", "is_active = 1"]
        params: list = []
        if category:
            conditions.append("category = ?")
            params.append(category.value)
        params.append(limit)

        cursor = await self._db().execute(
            f"""
            SELECT {_ROOM_COLUMNS} FROM rooms
            WHERE {" AND ".join(conditions)}
            ORDER BY last_activity DESC
            LIMIT ?
            """,
            params,
        )
        return await self._load_rooms(await cursor.fetchall())

    async def add_room_member(self, room_id: str, member: RoomMember) -> None:
        """Insert a member row. Raises AlreadyMemberError on a duplicate."""
        conn = self._db()
        async with self._write_lock:
            try:
                await conn.execute(
                    """
                    INSERT INTO room_members (room_id, user_id, role, joined_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (room_id, member.user_id, member.role.value, _iso(member.joined_at)),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                raise AlreadyMemberError() from e

    async def remove_room_member(self, room_id: str, user_id: str) -> bool:
        """Delete a member row. Returns False when absent."""
        conn = self._db()
        cursor = await conn.execute(
            "DELETE FROM room_members WHERE room_id = ? AND user_id = ?",
            (room_id, user_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def update_room_member_role(
        self, room_id: str, user_id: str, role: RoomRole
    ) -> bool:
        """Change a member's role. Returns False when absent."""
        conn = self._db()
        cursor = await conn.execute(
            "UPDATE room_members SET role = ? WHERE room_id = ? AND user_id = ?",
            (role.value, room_id, user_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def update_room_activity(self, room_id: str, at: datetime) -> None:
        """Set the last-activity timestamp."""
        conn = self._db()
        await conn.execute(
            "UPDATE rooms SET last_activity = ? WHERE id = ?", (_iso(at), room_id)
        )
        await conn.commit()

    async def set_room_active(self, room_id: str, active: bool) -> None:
        """Toggle the soft-deactivation flag."""
        conn = self._db()
        await conn.execute(
            "UPDATE rooms SET is_active = ? WHERE id = ?", (int(active), room_id)
        )
        await conn.commit()

    # Messages
    async def save_message(self, message: Message) -> None:
        """Insert a message with its attachments."""
        conn = self._db()

        # Generate ID if not provided
        if not message.id:
            message.id = str(uuid.uuid4())

        async with self._write_lock:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO messages ({_MESSAGE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.sender_id,
                        message.parent_id,
                        message.parent_type.value,
                        message.content,
                        message.message_type.value,
                        int(message.is_edited),
                        _iso(message.edited_at),
                        int(message.is_deleted),
                        _iso(message.deleted_at),
                        message.reply_to_id,
                        _iso(message.created_at),
                    ),
                )

                for attachment in message.attachments:
                    attachment.id = attachment.id or str(uuid.uuid4())
                    await conn.execute(
                        """
                        INSERT INTO message_attachments
                        (id, message_id, file_url, file_name, file_size, mime_type)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            attachment.id,
                            message.id,
                            attachment.file_url,
                            attachment.file_name,
                            attachment.file_size,
                            attachment.mime_type,
                        ),
                    )

                await conn.commit()
            except aiosqlite.Error:
                # Message and attachments land together or not at all
                await conn.rollback()
                raise

    async def _load_messages(self, rows, resolve_replies: bool = True) -> list[Message]:
        if not rows:
            return []
        conn = self._db()
        ids = [row[0] for row in rows]
        placeholders = ",".join("?" * len(ids))

        cursor = await conn.execute(
            f"""
            SELECT message_id, id, file_url, file_name, file_size, mime_type
            FROM message_attachments
            WHERE message_id IN ({placeholders})
            """,
            ids,
        )
        attachments: dict[str, list[Attachment]] = {}
        for att in await cursor.fetchall():
            attachments.setdefault(att[0], []).append(
                Attachment(
                    id=att[1],
                    file_url=att[2],
                    file_name=att[3],
                    file_size=att[4],
                    mime_type=att[5],
                )
            )

        cursor = await conn.execute(
            f"""
            SELECT message_id, user_id, read_at
            FROM message_reads
            WHERE message_id IN ({placeholders})
            ORDER BY read_at ASC, rowid ASC
            """,
            ids,
        )
        reads: dict[str, list[ReadReceipt]] = {}
        for read in await cursor.fetchall():
            reads.setdefault(read[0], []).append(
                ReadReceipt(user_id=read[1], read_at=_parse(read[2]))
            )

        senders = await self.get_users([row[1] for row in rows])

        replies: dict[str, Message] = {}
        reply_ids = sorted({row[10] for row in rows if row[10]})
        if resolve_replies and reply_ids:
            reply_placeholders = ",".join("?" * len(reply_ids))
            cursor = await conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id IN ({reply_placeholders})",
                reply_ids,
            )
            for reply in await self._load_messages(
                await cursor.fetchall(), resolve_replies=False
            ):
                replies[reply.id] = reply

        return [
            Message(
                id=row[0],
                sender_id=row[1],
                parent_id=row[2],
                parent_type=ParentType(row[3]),
                content=row[4],
                message_type=MessageType(row[5]),
                attachments=attachments.get(row[0], []),
                read_by=reads.get(row[0], []),
                is_edited=bool(row[6]),
                edited_at=_parse(row[7]),
                is_deleted=bool(row[8]),
                deleted_at=_parse(row[9]),
                reply_to_id=row[10],
                created_at=_parse(row[11]),
                sender=senders.get(row[1]),
                reply_to=replies.get(row[10]) if row[10] else None,
            )
            for row in rows
        ]

    async def get_message(self, message_id: str) -> Message | None:
        """Get a message (deleted ones included) with references resolved."""
        cursor = await self._db().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._load_messages([row]))[0]

    async def get_messages(self, message_ids: list[str]) -> dict[str, Message]:
        """Get several messages keyed by ID."""
        ids = sorted(set(message_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        cursor = await self._db().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id IN ({placeholders})", ids
        )
        messages = await self._load_messages(await cursor.fetchall())
        return {message.id: message for message in messages}

    async def get_recent_messages(self, parent_id: str, limit: int = 50) -> list[Message]:
        """Non-deleted messages of a parent, newest first."""
        cursor = await self._db().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE parent_id = ? AND is_deleted = 0
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (parent_id, limit),
        )
        return await self._load_messages(await cursor.fetchall())

    async def add_read_receipt(self, message_id: str, user_id: str, at: datetime) -> None:
        """Record a read once per user."""
        conn = self._db()
        await conn.execute(
            """
            INSERT OR IGNORE INTO message_reads (message_id, user_id, read_at)
            VALUES (?, ?, ?)
            """,
            (message_id, user_id, _iso(at)),
        )
        await conn.commit()

    async def update_message_content(
        self, message_id: str, content: str, edited_at: datetime
    ) -> None:
        """Replace content and mark edited."""
        conn = self._db()
        await conn.execute(
            """
            UPDATE messages SET content = ?, is_edited = 1, edited_at = ?
            WHERE id = ?
            """,
            (content, _iso(edited_at), message_id),
        )
        await conn.commit()

    async def soft_delete_message(
        self, message_id: str, tombstone: str, deleted_at: datetime
    ) -> None:
        """Replace content with the tombstone and mark deleted."""
        conn = self._db()
        await conn.execute(
            """
            UPDATE messages SET content = ?, is_deleted = 1, deleted_at = ?
            WHERE id = ?
            """,
            (tombstone, _iso(deleted_at), message_id),
        )
        await conn.commit()

    async def count_unread_messages(self, parent_id: str, user_id: str) -> int:
        """Messages not sent and not yet read by the user, deleted excluded."""
        cursor = await self._db().execute(
            """
            SELECT COUNT(*) FROM messages m
            WHERE m.parent_id = ?
              AND m.sender_id != ?
              AND m.is_deleted = 0
              AND NOT EXISTS (
                  SELECT 1 FROM message_reads r
                  WHERE r.message_id = m.id AND r.user_id = ?
              )
            """,
            (parent_id, user_id, user_id),
        )
        row = await cursor.fetchone()
        return int(row[0])

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        conn = self._db()
        await conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                _iso(event.timestamp),
            ),
        )
        await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        conditions = []
        params = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_iso(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await self._db().execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_parse(row[4]),
            )
            for row in rows
        ]

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        conn = self._db()
        await conn.execute(
            """
            INSERT INTO bus_messages (id, topic, payload, source, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                message.id or str(uuid.uuid4()),
                message.topic.value,
                json.dumps(message.payload, default=str),
                message.source,
                _iso(message.timestamp),
            ),
        )
        await conn.commit()

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        cursor = await self._db().execute(
            """
            SELECT id, topic, payload, source, timestamp
            FROM bus_messages
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()

        return [
            BusMessage(
                id=row[0],
                topic=Topic(row[1]),
                payload=json.loads(row[2]),
                source=row[3],
                timestamp=_parse(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._db()

        tables = [
            "message_reads",
            "message_attachments",
            "messages",
            "room_members",
            "rooms",
            "conversation_states",
            "conversations",
            "trace_events",
            "bus_messages",
            "users",
        ]

        for table in tables:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
