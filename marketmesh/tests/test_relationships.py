"""
Unit Tests: Relationship Store

Tests:
    - Conversation deduplication (either order, concurrent creators)
    - Message append, ordering, previews and read state
    - Per-participant soft delete and admin hard delete
    - Participant checks
    - Decorated views and reference rewriting
"""

import asyncio
import logging

import pytest

from marketmesh.core.errors import ErrorCode
from marketmesh.core.models import Conversation, Message
from marketmesh.core.types import PartitionName, Role, Timestamp
from marketmesh.tests.support import assert_err, assert_ok


class TestFindOrCreate:
    """Tests for conversation deduplication."""

    @pytest.mark.asyncio
    async def test_idempotent_in_either_order(self, seeded, ann, pat):
        mesh = seeded.mesh

        first = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        again = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        reverse = assert_ok(await mesh.find_or_create_conversation(pat, "c1"))

        assert first.id == again.id == reverse.id
        assert len(assert_ok(await seeded.relationship.list_all_conversations())) == 1

    @pytest.mark.asyncio
    async def test_records_partition_hints(self, seeded, ann):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        assert conversation.partition_hint("c1") is PartitionName.CUSTOMER
        assert conversation.partition_hint("p1") is PartitionName.PROVIDER

    @pytest.mark.asyncio
    async def test_concurrent_creators_get_one_conversation(self, seeded, ann, pat):
        mesh = seeded.mesh

        results = await asyncio.gather(
            mesh.find_or_create_conversation(ann, "p1"),
            mesh.find_or_create_conversation(pat, "c1"),
            mesh.find_or_create_conversation(ann, "p1"),
        )

        assert len({assert_ok(result).id for result in results}) == 1
        assert len(assert_ok(await seeded.relationship.list_all_conversations())) == 1

    @pytest.mark.asyncio
    async def test_lost_insert_race_returns_winner(self, seeded, ann):
        winner = Conversation(id="conv-w", participant_ids=("p1", "c1"))
        original_find = seeded.relationship.inner.find_conversation_by_pair
        lookups = 0

        async def find_then_race(key):
            # The second lookup (the re-check) misses; a rival inserts first
            nonlocal lookups
            lookups += 1
            if lookups == 2:
                await seeded.relationship.inner.insert_conversation(winner)
                return await original_find("no-such-pair")
            return await original_find(key)

        seeded.relationship.find_conversation_by_pair = find_then_race
        result = await seeded.mesh.find_or_create_conversation(ann, "p1")

        assert assert_ok(result).id == "conv-w"

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, seeded, ann):
        error = assert_err(await seeded.mesh.find_or_create_conversation(ann, "c1"))
        assert error.code is ErrorCode.INVALID_OPERAND

    @pytest.mark.asyncio
    async def test_unknown_partner_not_found(self, seeded, ann):
        error = assert_err(await seeded.mesh.find_or_create_conversation(ann, "ghost"))
        assert error.code is ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_relationship_partition_down_is_surfaced(self, seeded, ann):
        seeded.relationship.fail("find_conversation_by_pair")

        error = assert_err(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        assert error.code is ErrorCode.PARTITION_UNAVAILABLE
        assert error.retryable


class TestMessages:
    """Tests for message append and listing."""

    @pytest.mark.asyncio
    async def test_hello_scenario(self, seeded, ann, pat, bob):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))

        assert_ok(await mesh.append_message(conversation.id, ann, "hello"))
        messages = assert_ok(await mesh.list_messages(conversation.id, pat))

        assert len(messages) == 1
        assert (messages[0].sender_id, messages[0].receiver_id, messages[0].content) == (
            "c1", "p1", "hello"
        )

        refused = assert_err(await mesh.append_message(conversation.id, bob, "hi"))
        assert refused.code is ErrorCode.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_non_participant_cannot_read(self, seeded, ann, bob):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        error = assert_err(await seeded.mesh.list_messages(conversation.id, bob))

        assert error.code is ErrorCode.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_missing_conversation(self, seeded, ann):
        error = assert_err(await seeded.mesh.append_message("nope", ann, "hello"))
        assert error.code is ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "x" * 10_001])
    async def test_invalid_content(self, seeded, ann, content):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        error = assert_err(await seeded.mesh.append_message(conversation.id, ann, content))

        assert error.code is ErrorCode.INVALID_OPERAND

    @pytest.mark.asyncio
    async def test_content_is_trimmed_and_previewed(self, seeded, ann):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        long_text = "  " + "y" * 300 + "  "

        message = assert_ok(await mesh.append_message(conversation.id, ann, long_text))
        refreshed = assert_ok(await mesh.relationships.get_conversation(conversation.id, "c1"))

        assert message.content == "y" * 300
        assert refreshed.last_message_preview == "y" * 200
        assert refreshed.updated_at == message.created_at

    @pytest.mark.asyncio
    async def test_listing_order_with_timestamp_ties(self, seeded, ann):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))
        tie = Timestamp(1_700_000_000_000_000_000)
        for message_id, created in (("m3", tie), ("m1", tie), ("m0", Timestamp(tie.nanos + 5)), ("m2", tie)):
            assert_ok(await seeded.relationship.insert_message(Message(
                id=message_id,
                conversation_id=conversation.id,
                sender_id="c1",
                receiver_id="p1",
                content=message_id,
                created_at=created,
            )))

        messages = assert_ok(await seeded.mesh.list_messages(conversation.id, ann))

        assert [m.id for m in messages] == ["m1", "m2", "m3", "m0"]

    @pytest.mark.asyncio
    async def test_concurrent_senders_are_ordered(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))

        await asyncio.gather(*(
            mesh.append_message(conversation.id, sender, f"{sender.account_id}-{n}")
            for n in range(10)
            for sender in (ann, pat)
        ))
        messages = assert_ok(await mesh.list_messages(conversation.id, pat))

        assert len(messages) == 20
        keys = [m.sort_key for m in messages]
        assert keys == sorted(keys)

    @pytest.mark.asyncio
    async def test_failed_touch_still_returns_message(self, seeded, ann, caplog):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        seeded.relationship.fail("touch_conversation")

        with caplog.at_level(logging.WARNING):
            message = assert_ok(await mesh.append_message(conversation.id, ann, "hello"))

        stored = assert_ok(await mesh.list_messages(conversation.id, ann))
        assert [m.id for m in stored] == [message.id]
        assert "preview not updated" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_insert_is_surfaced(self, seeded, ann):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))
        seeded.relationship.fail("insert_message")

        error = assert_err(await seeded.mesh.append_message(conversation.id, ann, "hello"))

        assert error.code is ErrorCode.PARTITION_UNAVAILABLE
        assert assert_ok(await seeded.mesh.list_messages(conversation.id, ann)) == []

    @pytest.mark.asyncio
    async def test_mark_read(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.append_message(conversation.id, ann, "one"))
        assert_ok(await mesh.append_message(conversation.id, ann, "two"))
        assert_ok(await mesh.append_message(conversation.id, pat, "three"))

        assert assert_ok(await mesh.mark_read(conversation.id, pat)) == 2
        assert assert_ok(await mesh.mark_read(conversation.id, pat)) == 0

        by_content = {m.content: m.is_read for m in assert_ok(await mesh.list_messages(conversation.id, ann))}
        assert by_content == {"one": True, "two": True, "three": False}


class TestDeletion:
    """Tests for soft and hard deletion."""

    @pytest.mark.asyncio
    async def test_soft_delete_hides_for_one_participant(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))

        assert_ok(await mesh.soft_delete_conversation(conversation.id, ann))
        assert_ok(await mesh.soft_delete_conversation(conversation.id, ann))

        assert assert_ok(await mesh.list_conversations(ann)) == []
        assert [c.id for c in assert_ok(await mesh.list_conversations(pat))] == [conversation.id]

    @pytest.mark.asyncio
    async def test_soft_deleted_conversation_is_closed_to_that_participant(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.soft_delete_conversation(conversation.id, ann))

        error = assert_err(await mesh.append_message(conversation.id, ann, "still there?"))

        assert error.code is ErrorCode.UNAUTHORIZED
        assert_ok(await mesh.append_message(conversation.id, pat, "yes"))

    @pytest.mark.asyncio
    async def test_deleted_by_both_is_kept(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.append_message(conversation.id, ann, "hello"))

        assert_ok(await mesh.soft_delete_conversation(conversation.id, ann))
        assert_ok(await mesh.soft_delete_conversation(conversation.id, pat))

        stored = assert_ok(await seeded.relationship.get_conversation(conversation.id))
        assert stored.deleted_for == frozenset({"c1", "p1"})
        assert len(assert_ok(await seeded.relationship.list_messages(conversation.id))) == 1

    @pytest.mark.asyncio
    async def test_soft_delete_by_outsider(self, seeded, ann, bob):
        conversation = assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        error = assert_err(await seeded.mesh.soft_delete_conversation(conversation.id, bob))

        assert error.code is ErrorCode.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_admin_delete_removes_messages(self, seeded, ann, root):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.append_message(conversation.id, ann, "hello"))

        assert_ok(await mesh.admin_delete_conversation(conversation.id, root))

        assert assert_ok(await seeded.relationship.get_conversation(conversation.id)) is None
        assert assert_ok(await seeded.relationship.list_messages(conversation.id)) == []
        recreated = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert recreated.id != conversation.id

    @pytest.mark.asyncio
    async def test_admin_delete_missing(self, seeded, root):
        error = assert_err(await seeded.mesh.admin_delete_conversation("nope", root))
        assert error.code is ErrorCode.NOT_FOUND


class TestViews:
    """Tests for identity-decorated views."""

    @pytest.mark.asyncio
    async def test_conversation_views(self, seeded, ann):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))

        views = assert_ok(await mesh.list_conversation_views(ann))

        assert [v.conversation.id for v in views] == [conversation.id]
        other = views[0].other("c1")
        assert (other.account_id, other.role, other.display_name) == ("p1", Role.PROVIDER, "Pat")

    @pytest.mark.asyncio
    async def test_deleted_partner_renders_as_unknown(self, seeded, ann):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.append_message(conversation.id, ann, "hello"))
        assert_ok(await seeded.providers.delete("p1"))

        views = assert_ok(await mesh.list_message_views(conversation.id, ann))

        assert views[0].sender.display_name == "Ann"
        assert not views[0].receiver.is_known
        assert views[0].to_dict()["receiver"]["display_name"] == "Unknown User"

    @pytest.mark.asyncio
    async def test_views_survive_partition_outage(self, seeded, ann):
        mesh = seeded.mesh
        assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        seeded.providers.fail("get_many", times=5)

        views = assert_ok(await mesh.list_conversation_views(ann))

        assert not views[0].other("c1").is_known


class TestRewrite:
    """Tests for reference rewriting."""

    @pytest.mark.asyncio
    async def test_rewrite_is_idempotent(self, seeded, ann):
        mesh = seeded.mesh
        store = mesh.relationships
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.append_message(conversation.id, ann, "hello"))

        first = assert_ok(await store.rewrite_references("c1", "p7", PartitionName.PROVIDER))
        second = assert_ok(await store.rewrite_references("c1", "p7", PartitionName.PROVIDER))

        assert (first.conversations_rewritten, first.messages_rewritten) == (1, 1)
        assert (second.conversations_rewritten, second.messages_rewritten) == (0, 0)
        assert first.complete and second.complete

        rewritten = assert_ok(await seeded.relationship.get_conversation(conversation.id))
        assert set(rewritten.participant_ids) == {"p7", "p1"}
        assert rewritten.partition_hint("p7") is PartitionName.PROVIDER
        assert assert_ok(await seeded.relationship.find_conversation_by_pair(rewritten.pair_key)).id == conversation.id

    @pytest.mark.asyncio
    async def test_rewrite_merges_into_existing_thread_for_pair(self, seeded):
        partition = seeded.relationship
        assert_ok(await partition.insert_conversation(Conversation(
            id="conv-old",
            participant_ids=("c1", "p1"),
            deleted_for=frozenset({"c1"}),
            last_message_preview="older",
            created_at=Timestamp(100),
            updated_at=Timestamp(200),
        )))
        assert_ok(await partition.insert_conversation(Conversation(
            id="conv-new",
            participant_ids=("p7", "p1"),
            deleted_for=frozenset({"p7", "p1"}),
            last_message_preview="newer",
            created_at=Timestamp(150),
            updated_at=Timestamp(300),
        )))
        assert_ok(await partition.insert_message(Message(
            "m1", "conv-old", "c1", "p1", "older", created_at=Timestamp(200)
        )))
        assert_ok(await partition.insert_message(Message(
            "m2", "conv-new", "p7", "p1", "newer", created_at=Timestamp(300)
        )))

        report = assert_ok(await seeded.mesh.relationships.rewrite_references(
            "c1", "p7", PartitionName.PROVIDER
        ))

        assert report.complete
        assert assert_ok(await partition.get_conversation("conv-old")) is None
        survivor = assert_ok(await partition.get_conversation("conv-new"))
        assert survivor.deleted_for == frozenset({"p7"})
        assert survivor.last_message_preview == "newer"
        assert survivor.created_at == Timestamp(100)
        messages = assert_ok(await partition.list_messages("conv-new"))
        assert [(m.id, m.sender_id) for m in messages] == [("m1", "p7"), ("m2", "p7")]
        assert assert_ok(await partition.find_conversation_by_pair(survivor.pair_key)).id == "conv-new"

    @pytest.mark.asyncio
    async def test_rewrite_drops_thread_between_old_and_new_id(self, seeded):
        partition = seeded.relationship
        assert_ok(await partition.insert_conversation(Conversation(id="conv-self", participant_ids=("c1", "p7"))))
        assert_ok(await partition.insert_message(Message("m1", "conv-self", "p7", "c1", "hi me")))

        report = assert_ok(await seeded.mesh.relationships.rewrite_references(
            "c1", "p7", PartitionName.PROVIDER
        ))

        assert report.complete
        assert assert_ok(await partition.get_conversation("conv-self")) is None
        assert assert_ok(await partition.list_messages("conv-self")) == []
