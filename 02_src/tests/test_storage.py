"""Tests for Storage."""

import asyncio
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from chat_core.errors import AlreadyMemberError, DuplicateNameError
from chat_core.models import (
    Attachment,
    BusMessage,
    Message,
    MessageType,
    ParentType,
    PresenceStatus,
    Room,
    RoomCategory,
    RoomMember,
    RoomRole,
    Topic,
    TraceEvent,
)


def _message(message_id: str, parent_id: str = "c1", sender_id: str = "alice", **kwargs) -> Message:
    kwargs.setdefault("content", f"text of {message_id}")
    return Message(
        id=message_id,
        sender_id=sender_id,
        parent_id=parent_id,
        parent_type=kwargs.pop("parent_type", ParentType.CONVERSATION),
        **kwargs,
    )


class TestStorageInit:
    """Tests for Storage initialization."""

    async def test_init_creates_tables(self, storage):
        """Test that init creates all tables."""
        async with storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
        for table in (
            "users",
            "conversations",
            "conversation_states",
            "rooms",
            "room_members",
            "messages",
            "message_attachments",
            "message_reads",
            "trace_events",
            "bus_messages",
        ):
            assert table in tables

    async def test_uninitialized_storage_raises(self):
        from chat_core.storage import Storage

        st = Storage(":memory:")
        with pytest.raises(RuntimeError):
            await st.get_user("nobody")


class TestStorageUsers:
    """Tests for User storage."""

    async def test_get_user(self, storage, alice):
        retrieved = await storage.get_user("alice")
        assert retrieved is not None
        assert retrieved.email == "alice@example.edu"
        assert retrieved.status is PresenceStatus.OFFLINE

    async def test_get_nonexistent_user(self, storage):
        assert await storage.get_user("nobody") is None

    async def test_upsert_user_creates_then_refreshes_name(self, storage):
        first = await storage.upsert_user("dana@example.edu", "Dana", "dana")
        second = await storage.upsert_user("dana@example.edu", "Dana S.", "dana")
        assert first.id == second.id
        assert second.name == "Dana S."

    async def test_upsert_user_handle_collision(self, storage):
        await storage.upsert_user("dana@example.edu", "Dana", "dana")
        with pytest.raises(DuplicateNameError):
            await storage.upsert_user("dana@other.edu", "Other Dana", "dana")

    async def test_presence_update_and_online_list(self, storage, alice, bob):
        now = datetime.now(timezone.utc)
        await storage.update_user_presence("alice", PresenceStatus.ONLINE, now)

        online = await storage.get_online_users()
        assert [u.id for u in online] == ["alice"]
        assert (await storage.get_user("alice")).last_seen == now

    async def test_get_users_keyed_by_id(self, storage, alice, bob):
        users = await storage.get_users(["bob", "alice", "ghost"])
        assert set(users) == {"alice", "bob"}


class TestStorageConversations:
    """Tests for Conversation storage."""

    async def test_find_or_create_is_idempotent(self, storage):
        first = await storage.find_or_create_conversation("alice", "bob")
        second = await storage.find_or_create_conversation("bob", "alice")
        assert first.id == second.id
        assert first.participant_ids == ("alice", "bob")

    async def test_states_created_with_conversation(self, storage):
        conversation = await storage.find_or_create_conversation("bob", "alice")
        assert set(conversation.states) == {"alice", "bob"}
        assert all(s.unread_count == 0 for s in conversation.states.values())

    async def test_concurrent_creates_yield_one_record(self, storage):
        results = await asyncio.gather(
            *[storage.find_or_create_conversation("alice", "bob") for _ in range(5)],
            *[storage.find_or_create_conversation("bob", "alice") for _ in range(5)],
        )
        assert len({c.id for c in results}) == 1

        async with storage._conn.execute("SELECT COUNT(*) FROM conversations") as cursor:
            assert (await cursor.fetchone())[0] == 1
        async with storage._conn.execute(
            "SELECT COUNT(*) FROM conversation_states"
        ) as cursor:
            assert (await cursor.fetchone())[0] == 2

    async def test_same_user_pair_rejected(self, storage):
        with pytest.raises(ValueError):
            await storage.find_or_create_conversation("alice", "alice")

    async def test_unread_counters(self, storage):
        conversation = await storage.find_or_create_conversation("alice", "bob")
        await storage.increment_unread(conversation.id, "bob")
        await storage.increment_unread(conversation.id, "bob")

        loaded = await storage.get_conversation(conversation.id)
        assert loaded.unread_count_for("bob") == 2
        assert loaded.unread_count_for("alice") == 0
        assert await storage.get_total_unread("bob") == 2

        await storage.reset_unread(conversation.id, "bob")
        loaded = await storage.get_conversation(conversation.id)
        assert loaded.unread_count_for("bob") == 0

    async def test_flags(self, storage):
        conversation = await storage.find_or_create_conversation("alice", "bob")
        await storage.set_conversation_flag(conversation.id, "alice", "pinned", True)
        await storage.set_conversation_flag(conversation.id, "bob", "archived", True)

        loaded = await storage.get_conversation(conversation.id)
        assert loaded.is_pinned_for("alice")
        assert not loaded.is_pinned_for("bob")
        assert loaded.is_archived_for("bob")

    async def test_unknown_flag_rejected(self, storage):
        conversation = await storage.find_or_create_conversation("alice", "bob")
        with pytest.raises(ValueError):
            await storage.set_conversation_flag(conversation.id, "alice", "muted", True)

    async def test_user_conversations_by_last_activity(self, storage):
        older = await storage.find_or_create_conversation("alice", "bob")
        newer = await storage.find_or_create_conversation("alice", "carol")
        await storage.update_conversation_last_message(
            older.id, "m1", datetime.now(timezone.utc) + timedelta(seconds=5)
        )

        conversations = await storage.get_user_conversations("alice")
        assert [c.id for c in conversations] == [older.id, newer.id]
        assert conversations[0].last_message_id == "m1"


class TestStorageRooms:
    """Tests for Room storage."""

    def _room(self, room_id: str = "r1", name: str = "Study Group", **kwargs) -> Room:
        return Room(id=room_id, name=name, owner_id="alice", **kwargs)

    async def test_owner_added_as_member(self, storage):
        await storage.create_room(self._room())
        room = await storage.get_room("r1")
        assert room.member_count == 1
        assert room.members[0].user_id == "alice"
        assert room.members[0].role is RoomRole.OWNER

    async def test_duplicate_name(self, storage):
        await storage.create_room(self._room())
        with pytest.raises(DuplicateNameError):
            await storage.create_room(self._room("r2"))

    async def test_invite_code_roundtrip(self, storage):
        await storage.create_room(self._room(is_private=True))
        await storage.set_room_invite_code("r1", "ABCD2345")

        assert await storage.invite_code_exists("ABCD2345")
        room = await storage.get_room_by_invite_code("ABCD2345")
        assert room.id == "r1"

    async def test_invite_code_unique(self, storage):
        await storage.create_room(self._room("r1", "One", is_private=True))
        await storage.create_room(self._room("r2", "Two", is_private=True))
        await storage.set_room_invite_code("r1", "ABCD2345")
        with pytest.raises(DuplicateNameError):
            await storage.set_room_invite_code("r2", "ABCD2345")

    async def test_members(self, storage):
        await storage.create_room(self._room())
        await storage.add_room_member("r1", RoomMember(user_id="bob"))

        assert await storage.update_room_member_role("r1", "bob", RoomRole.ADMIN)
        room = await storage.get_room("r1")
        assert room.get_member("bob").role is RoomRole.ADMIN

        assert await storage.remove_room_member("r1", "bob")
        assert not await storage.remove_room_member("r1", "bob")
        assert not await storage.update_room_member_role("r1", "bob", RoomRole.MEMBER)

    async def test_duplicate_member_row(self, storage):
        await storage.create_room(self._room())
        await storage.add_room_member("r1", RoomMember(user_id="bob"))
        with pytest.raises(AlreadyMemberError):
            await storage.add_room_member("r1", RoomMember(user_id="bob"))

        # The failed insert leaves no open transaction behind
        await storage.add_room_member("r1", RoomMember(user_id="carol"))
        room = await storage.get_room("r1")
        assert room.member_count == 3

    async def test_public_rooms_exclude_private_and_inactive(self, storage):
        await storage.create_room(self._room("r1", "Open", category=RoomCategory.SPORTS))
        await storage.create_room(self._room("r2", "Secret", is_private=True))
        await storage.create_room(self._room("r3", "Closed"))
        await storage.set_room_active("r3", False)

        rooms = await storage.get_public_rooms()
        assert [r.id for r in rooms] == ["r1"]
        assert await storage.get_public_rooms(category=RoomCategory.HOUSING) == []

    async def test_user_rooms(self, storage):
        await storage.create_room(self._room("r1", "One"))
        await storage.create_room(self._room("r2", "Two"))
        await storage.add_room_member("r2", RoomMember(user_id="bob"))

        rooms = await storage.get_user_rooms("bob")
        assert [r.id for r in rooms] == ["r2"]


class TestStorageMessages:
    """Tests for Message storage."""

    async def test_save_and_get_message(self, storage, alice):
        await storage.save_message(_message("m1"))
        loaded = await storage.get_message("m1")
        assert loaded.content == "text of m1"
        assert loaded.sender.name == "Alice"

    async def test_save_message_generates_id(self, storage):
        msg = _message("")
        await storage.save_message(msg)
        assert msg.id

    async def test_attachments(self, storage):
        await storage.save_message(
            _message(
                "m1",
                content=None,
                message_type=MessageType.IMAGE,
                attachments=[Attachment(file_url="https://cdn/x.png", mime_type="image/png")],
            )
        )
        loaded = await storage.get_message("m1")
        assert loaded.message_type is MessageType.IMAGE
        assert loaded.attachments[0].file_url == "https://cdn/x.png"

    async def test_failed_attachment_discards_message(self, storage):
        attachments = [
            Attachment(id="a1", file_url="https://cdn/x.png"),
            Attachment(id="a1", file_url="https://cdn/y.png"),
        ]
        with pytest.raises(aiosqlite.IntegrityError):
            await storage.save_message(
                _message("m1", content=None, message_type=MessageType.IMAGE, attachments=attachments)
            )

        # A later commit must not persist the half-written message
        await storage.save_message(_message("m2"))
        assert await storage.get_message("m1") is None
        assert (await storage.get_message("m2")) is not None

    async def test_recent_messages_newest_first_without_deleted(self, storage):
        base = datetime.now(timezone.utc)
        for i in range(3):
            await storage.save_message(
                _message(f"m{i}", created_at=base + timedelta(seconds=i))
            )
        await storage.soft_delete_message("m1", "gone", base)

        recent = await storage.get_recent_messages("c1")
        assert [m.id for m in recent] == ["m2", "m0"]

    async def test_recent_messages_limit(self, storage):
        base = datetime.now(timezone.utc)
        for i in range(5):
            await storage.save_message(
                _message(f"m{i}", created_at=base + timedelta(seconds=i))
            )
        recent = await storage.get_recent_messages("c1", limit=2)
        assert [m.id for m in recent] == ["m4", "m3"]

    async def test_read_receipt_once_per_user(self, storage):
        await storage.save_message(_message("m1"))
        now = datetime.now(timezone.utc)
        await storage.add_read_receipt("m1", "bob", now)
        await storage.add_read_receipt("m1", "bob", now + timedelta(seconds=1))

        loaded = await storage.get_message("m1")
        assert [r.user_id for r in loaded.read_by] == ["bob"]

    async def test_reply_target_resolved(self, storage):
        await storage.save_message(_message("m1"))
        await storage.save_message(_message("m2", sender_id="bob", reply_to_id="m1"))

        loaded = await storage.get_message("m2")
        assert loaded.reply_to.id == "m1"

    async def test_count_unread(self, storage):
        await storage.save_message(_message("m1", sender_id="alice"))
        await storage.save_message(_message("m2", sender_id="alice"))
        await storage.save_message(_message("m3", sender_id="bob"))
        await storage.save_message(_message("m4", sender_id="alice"))
        await storage.add_read_receipt("m1", "bob", datetime.now(timezone.utc))
        await storage.soft_delete_message("m4", "gone", datetime.now(timezone.utc))

        assert await storage.count_unread_messages("c1", "bob") == 1


class TestStorageTraceEvents:
    """Tests for TraceEvent storage."""

    async def test_filters(self, storage):
        ts = datetime.now(timezone.utc)
        for i, (event_type, actor) in enumerate(
            [("connection_opened", "gateway"), ("request_failed", "gateway"), ("x", "other")]
        ):
            await storage.save_trace_event(
                TraceEvent(
                    id=f"t{i}",
                    event_type=event_type,
                    actor=actor,
                    data={"i": i},
                    timestamp=ts + timedelta(seconds=i),
                )
            )

        assert len(await storage.get_trace_events()) == 3
        assert [e.id for e in await storage.get_trace_events(actor="gateway")] == ["t1", "t0"]
        assert [
            e.id for e in await storage.get_trace_events(event_types=["request_failed"])
        ] == ["t1"]
        assert [e.id for e in await storage.get_trace_events(after=ts)] == ["t2", "t1"]


class TestStorageBusMessages:
    """Tests for BusMessage storage."""

    async def test_save_and_list(self, storage):
        await storage.save_bus_message(
            BusMessage(
                id="b1",
                topic=Topic.PRESENCE,
                payload={"event": "user:online", "broadcast": True},
                source="presence",
                timestamp=datetime.now(timezone.utc),
            )
        )
        messages = await storage.get_bus_messages()
        assert messages[0].topic is Topic.PRESENCE
        assert messages[0].payload["event"] == "user:online"


class TestStorageClear:
    async def test_clear(self, storage, alice):
        await storage.find_or_create_conversation("alice", "bob")
        await storage.clear()
        assert await storage.get_user("alice") is None
        assert await storage.get_user_conversations("alice") == []
