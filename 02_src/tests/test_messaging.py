"""Tests for MessagePipeline."""

import pytest

from chat_core.config import TOMBSTONE_TEXT
from chat_core.errors import NotFoundError, UnauthorizedError, ValidationFailure
from chat_core.models import Attachment, BusMessage, MessageType, ParentType, Topic


@pytest.fixture
def published(event_bus):
    messages: list[BusMessage] = []

    async def handler(msg: BusMessage):
        messages.append(msg)

    event_bus.subscribe(Topic.MESSAGE, handler)
    return messages


@pytest.fixture
async def conversation(conversations, alice, bob):
    return await conversations.find_or_create("alice", "bob")


@pytest.fixture
async def room(rooms, alice):
    return await rooms.create_room("alice", "Study")


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_conversation_message(self, pipeline, conversations, conversation, published):
        message = await pipeline.send_message(conversation.id, "alice", "  hi  ")

        assert message.content == "hi"
        assert message.parent_type is ParentType.CONVERSATION
        assert message.sender.name == "Alice"

        loaded = await conversations.get(conversation.id)
        assert loaded.last_message_id == message.id
        assert loaded.unread_count_for("bob") == 1
        assert loaded.unread_count_for("alice") == 0

        payload = published[-1].payload
        assert payload["event"] == "message:new"
        assert payload["data"]["message"]["content"] == "hi"
        assert payload["data"]["message"]["senderId"] == "alice"
        assert set(payload["channels"]) == {
            f"conversation:{conversation.id}",
            "user:alice",
            "user:bob",
        }

    @pytest.mark.asyncio
    async def test_room_message_updates_activity(self, pipeline, rooms, room, published):
        before = room.last_activity
        message = await pipeline.send_message(room.id, "alice", "hello room")

        assert message.parent_type is ParentType.ROOM
        assert (await rooms.get_room(room.id)).last_activity >= before
        assert published[-1].payload["channels"] == [f"room:{room.id}"]

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, pipeline, conversation, carol):
        with pytest.raises(UnauthorizedError):
            await pipeline.send_message(conversation.id, "carol", "let me in")

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, pipeline, room, bob):
        with pytest.raises(UnauthorizedError):
            await pipeline.send_message(room.id, "bob", "hi", parent_type=ParentType.ROOM)

    @pytest.mark.asyncio
    async def test_unknown_parent(self, pipeline, alice):
        with pytest.raises(NotFoundError):
            await pipeline.send_message("missing", "alice", "hi")

    @pytest.mark.asyncio
    async def test_parent_type_mismatch(self, pipeline, room):
        with pytest.raises(NotFoundError):
            await pipeline.send_message(room.id, "alice", "hi", parent_type=ParentType.CONVERSATION)

    @pytest.mark.parametrize("content", ["", "   ", None, "x" * 5001])
    @pytest.mark.asyncio
    async def test_invalid_content(self, pipeline, conversation, content):
        with pytest.raises(ValidationFailure):
            await pipeline.send_message(conversation.id, "alice", content)

    @pytest.mark.asyncio
    async def test_max_length_accepted(self, pipeline, conversation):
        message = await pipeline.send_message(conversation.id, "alice", "x" * 5000)
        assert len(message.content) == 5000

    @pytest.mark.asyncio
    async def test_image_requires_attachment(self, pipeline, conversation):
        with pytest.raises(ValidationFailure):
            await pipeline.send_message(conversation.id, "alice", None, MessageType.IMAGE)

        message = await pipeline.send_message(
            conversation.id,
            "alice",
            None,
            MessageType.IMAGE,
            attachments=[Attachment(file_url="https://cdn/cat.png", mime_type="image/png")],
        )
        assert message.attachments[0].file_url == "https://cdn/cat.png"

    @pytest.mark.asyncio
    async def test_reply_must_share_parent(self, pipeline, conversation, room):
        in_room = await pipeline.send_message(room.id, "alice", "room msg")
        with pytest.raises(ValidationFailure):
            await pipeline.send_message(conversation.id, "alice", "re", reply_to_id=in_room.id)

        original = await pipeline.send_message(conversation.id, "bob", "question")
        reply = await pipeline.send_message(
            conversation.id, "alice", "answer", reply_to_id=original.id
        )
        assert reply.reply_to.content == "question"


class TestReadEditDelete:
    @pytest.mark.asyncio
    async def test_mark_read_twice_single_entry(self, pipeline, conversation, published):
        message = await pipeline.send_message(conversation.id, "alice", "hi")
        await pipeline.mark_read(message.id, "bob")
        read = await pipeline.mark_read(message.id, "bob")

        assert [r.user_id for r in read.read_by] == ["bob"]
        read_events = [m for m in published if m.payload["event"] == "message:read"]
        assert len(read_events) == 1
        assert read_events[0].payload["data"] == {"messageId": message.id, "userId": "bob"}

    @pytest.mark.asyncio
    async def test_unread_count(self, pipeline, conversation):
        first = await pipeline.send_message(conversation.id, "alice", "one")
        await pipeline.send_message(conversation.id, "alice", "two")
        await pipeline.send_message(conversation.id, "bob", "three")
        assert await pipeline.unread_count(conversation.id, "bob") == 2

        await pipeline.mark_read(first.id, "bob")
        assert await pipeline.unread_count(conversation.id, "bob") == 1

    @pytest.mark.asyncio
    async def test_edit(self, pipeline, conversation, published):
        message = await pipeline.send_message(conversation.id, "alice", "helo")
        edited = await pipeline.edit_message(message.id, "hello")

        assert edited.content == "hello"
        assert edited.is_edited
        assert edited.edited_at is not None
        assert published[-1].payload["event"] == "message:edited"

    @pytest.mark.asyncio
    async def test_soft_delete(self, pipeline, conversation, published):
        original = await pipeline.send_message(conversation.id, "alice", "secret")
        reply = await pipeline.send_message(
            conversation.id, "bob", "what?", reply_to_id=original.id
        )

        deleted = await pipeline.soft_delete(original.id)
        assert deleted.is_deleted
        assert deleted.content == TOMBSTONE_TEXT
        assert published[-1].payload["data"] == {
            "messageId": original.id,
            "parentId": conversation.id,
        }

        recent = await pipeline.recent_messages(conversation.id)
        assert [m.id for m in recent] == [reply.id]
        # Still reachable through the reply reference
        assert recent[0].reply_to.content == TOMBSTONE_TEXT

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, pipeline, conversation, published):
        message = await pipeline.send_message(conversation.id, "alice", "oops")
        await pipeline.soft_delete(message.id)
        count = len(published)
        await pipeline.soft_delete(message.id)
        assert len(published) == count

    @pytest.mark.asyncio
    async def test_cannot_edit_deleted(self, pipeline, conversation):
        message = await pipeline.send_message(conversation.id, "alice", "oops")
        await pipeline.soft_delete(message.id)
        with pytest.raises(ValidationFailure):
            await pipeline.edit_message(message.id, "fixed")

    @pytest.mark.asyncio
    async def test_unknown_message(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.mark_read("missing", "bob")
