"""Tests for ConversationService."""

import asyncio

import pytest

from chat_core.errors import NotFoundError, UnauthorizedError, ValidationFailure
from chat_core.models import ParentType
from chat_core.state import get_other_participant, is_archived_for_user, is_pinned_for_user


class TestFindOrCreate:
    @pytest.mark.asyncio
    async def test_both_orders_return_same_record(self, conversations, alice, bob):
        first = await conversations.find_or_create("alice", "bob")
        second = await conversations.find_or_create("bob", "alice")

        assert first.id == second.id
        assert first.participant_ids == ("alice", "bob")
        assert {u.id for u in first.participants} == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_new_conversation_has_zero_unread_for_both(self, conversations, alice, bob):
        conversation = await conversations.find_or_create("alice", "bob")
        assert conversation.unread_count_for("alice") == 0
        assert conversation.unread_count_for("bob") == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one(self, conversations, alice, bob):
        results = await asyncio.gather(
            conversations.find_or_create("alice", "bob"),
            conversations.find_or_create("bob", "alice"),
            conversations.find_or_create("alice", "bob"),
        )
        assert len({c.id for c in results}) == 1

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, conversations, alice):
        with pytest.raises(ValidationFailure):
            await conversations.find_or_create("alice", "alice")

    @pytest.mark.asyncio
    async def test_unknown_user(self, conversations, alice):
        with pytest.raises(NotFoundError):
            await conversations.find_or_create("alice", "ghost")


class TestUnread:
    @pytest.mark.asyncio
    async def test_increment_then_reset(self, conversations, alice, bob):
        conversation = await conversations.find_or_create("alice", "bob")
        await conversations.increment_unread(conversation.id, "bob")
        await conversations.increment_unread(conversation.id, "bob")
        assert await conversations.get_unread_count(conversation.id, "bob") == 2
        assert await conversations.total_unread_count("bob") == 2

        await conversations.reset_unread(conversation.id, "bob")
        assert await conversations.get_unread_count(conversation.id, "bob") == 0

    @pytest.mark.asyncio
    async def test_non_participant_counter_rejected(self, conversations, alice, bob, carol):
        conversation = await conversations.find_or_create("alice", "bob")
        with pytest.raises(UnauthorizedError):
            await conversations.increment_unread(conversation.id, "carol")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, conversations):
        with pytest.raises(NotFoundError):
            await conversations.get("missing")


class TestFlags:
    @pytest.mark.asyncio
    async def test_archive_and_pin_are_per_user(self, conversations, alice, bob):
        conversation = await conversations.find_or_create("alice", "bob")
        await conversations.set_archived(conversation.id, "alice", True)
        await conversations.set_archived(conversation.id, "alice", True)
        await conversations.set_pinned(conversation.id, "bob", True)

        loaded = await conversations.get(conversation.id)
        assert is_archived_for_user(loaded, "alice")
        assert not is_archived_for_user(loaded, "bob")
        assert is_pinned_for_user(loaded, "bob")
        assert not is_pinned_for_user(loaded, "alice")

    @pytest.mark.asyncio
    async def test_other_participant(self, conversations, alice, bob):
        conversation = await conversations.find_or_create("alice", "bob")
        assert get_other_participant(conversation, "alice") == "bob"


class TestListConversations:
    @pytest.mark.asyncio
    async def test_pinned_first_then_last_activity(
        self, conversations, pipeline, make_user, alice
    ):
        for name in ("bob", "carol", "dave"):
            await make_user(name)

        with_bob = await conversations.find_or_create("alice", "bob")
        with_carol = await conversations.find_or_create("alice", "carol")
        with_dave = await conversations.find_or_create("alice", "dave")

        await pipeline.send_message(with_bob.id, "bob", "one", parent_type=ParentType.CONVERSATION)
        await pipeline.send_message(with_carol.id, "carol", "two", parent_type=ParentType.CONVERSATION)
        await pipeline.send_message(with_dave.id, "dave", "three", parent_type=ParentType.CONVERSATION)
        await conversations.set_pinned(with_bob.id, "alice", True)

        listed = await conversations.list_conversations("alice")
        assert [c.id for c in listed] == [with_bob.id, with_dave.id, with_carol.id]
        assert listed[1].last_message.content == "three"

    @pytest.mark.asyncio
    async def test_archived_hidden_unless_requested(self, conversations, alice, bob, carol):
        with_bob = await conversations.find_or_create("alice", "bob")
        await conversations.find_or_create("alice", "carol")
        await conversations.set_archived(with_bob.id, "alice", True)

        assert with_bob.id not in [c.id for c in await conversations.list_conversations("alice")]
        assert with_bob.id in [
            c.id for c in await conversations.list_conversations("alice", include_archived=True)
        ]
        # Archive is per user
        assert with_bob.id in [c.id for c in await conversations.list_conversations("bob")]
