"""
Unit Tests: Customer-to-Provider Migration

Tests:
    - End-to-end migration with reference rewriting
    - Refusals (unknown source, provider source, migrated stub, banned account)
    - Conflicting target identifiers are fatal
    - Resume after a failed step, without a second provider account
    - One conversation per pair after a resumed rewrite
    - Concurrent calls for one source
    - Failed source deletion leaves a flagged stub
    - Recovery of pending migrations
    - Journal state machine
"""

import asyncio

import pytest

from marketmesh.core.errors import ErrorCode, MigrationError, StorageError
from marketmesh.core.types import Ok, PartitionName, Role
from marketmesh.migration.journal import (
    MigrationRecord,
    MigrationState,
    ProviderOverrides,
)
from marketmesh.reliability.retry import RetryPolicy
from marketmesh.service import Principal
from marketmesh.tests.support import assert_err, assert_ok, build_world, customer, provider

FAST_RETRY = RetryPolicy(max_retries=2, base_delay_ms=1, max_delay_ms=1)


async def chat(world, ann: Principal) -> str:
    conversation = assert_ok(await world.mesh.find_or_create_conversation(ann, "p1"))
    assert_ok(await world.mesh.append_message(conversation.id, ann, "hello"))
    return conversation.id


async def latest(world, source_id: str) -> MigrationRecord:
    return assert_ok(await world.journal.latest_for_source(source_id))


class TestMigration:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_customer_becomes_provider(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation_id = await chat(seeded, ann)

        new_id = assert_ok(await mesh.migrate_account_to_provider(
            "c1", ProviderOverrides(display_name="Ann's Gardening", contact_phone="555-0100")
        ))

        assert new_id == "p2"
        messages = assert_ok(await mesh.list_messages(conversation_id, pat))
        assert [(m.sender_id, m.receiver_id, m.content) for m in messages] == [("p2", "p1", "hello")]

        old = await mesh.resolve_identity("c1")
        new = await mesh.resolve_identity("p2")
        assert not old.is_known
        assert new.role is Role.PROVIDER
        assert new.display_name == "Ann's Gardening"

    @pytest.mark.asyncio
    async def test_new_account_carries_credential_and_profile(self, seeded):
        new_id = assert_ok(await seeded.mesh.migrate_account_to_provider(
            "c1", ProviderOverrides(contact_phone="555-0100")
        ))

        account = assert_ok(await seeded.providers.get(new_id))
        assert account.credential_hash == "hash-ann"
        assert account.display_name == "Ann"
        assert account.contact_phone == "555-0100"
        assert account.city == "Leeds"
        assert assert_ok(await seeded.customers.get("c1")) is None
        assert len(seeded.customers) == 1

    @pytest.mark.asyncio
    async def test_conversations_follow_the_new_id(self, seeded, ann, bob):
        mesh = seeded.mesh
        conversation_id = await chat(seeded, ann)
        with_bob = assert_ok(await mesh.find_or_create_conversation(ann, "c2"))
        assert_ok(await mesh.soft_delete_conversation(with_bob.id, ann))

        assert_ok(await mesh.migrate_account_to_provider("c1"))

        as_provider = Principal("p2", Role.PROVIDER)
        visible = assert_ok(await mesh.list_conversations(as_provider))
        assert [c.id for c in visible] == [conversation_id]
        rewritten = assert_ok(await seeded.relationship.get_conversation(conversation_id))
        assert rewritten.partition_hint("p2") is PartitionName.PROVIDER
        assert assert_ok(await mesh.relationships.count_references("c1")) == 0

        again = assert_ok(await mesh.find_or_create_conversation(as_provider, "p1"))
        assert again.id == conversation_id
        assert [c.id for c in assert_ok(await mesh.list_conversations(bob))] == [with_bob.id]

    @pytest.mark.asyncio
    async def test_journal_records_done(self, seeded):
        assert_ok(await seeded.mesh.migrate_account_to_provider("c1"))

        record = await latest(seeded, "c1")
        assert record.state is MigrationState.DONE
        assert record.target_id == "p2"
        assert record.attempts == 1
        assert assert_ok(await seeded.journal.list_pending()) == []
        assert seeded.mesh.metrics.migrations.get(state="done") == 1


class TestRefusals:
    """Tests for migrations that never start."""

    @pytest.mark.asyncio
    async def test_unknown_source(self, seeded):
        error = assert_err(await seeded.mesh.migrate_account_to_provider("ghost"))

        assert error.code is ErrorCode.NOT_FOUND
        assert await latest(seeded, "ghost") is None

    @pytest.mark.asyncio
    async def test_provider_cannot_migrate(self, seeded):
        error = assert_err(await seeded.mesh.migrate_account_to_provider("p1"))
        assert error.code is ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_finished_migration_is_not_repeated(self, seeded):
        assert_ok(await seeded.mesh.migrate_account_to_provider("c1"))

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.NOT_FOUND
        assert len(seeded.providers) == 2

    @pytest.mark.asyncio
    async def test_migrated_stub_is_refused(self, seeded):
        assert_ok(await seeded.customers.mark_migrated("c2", "p9"))

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c2"))

        assert error.code is ErrorCode.INVALID_OPERAND

    @pytest.mark.asyncio
    async def test_banned_customer_is_refused(self, seeded, root):
        assert_ok(await seeded.mesh.set_banned(root, "c1", True))

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.UNAUTHORIZED
        assert not error.retryable
        assert await latest(seeded, "c1") is None
        assert len(seeded.providers) == 1
        assert assert_ok(await seeded.mesh.can_authenticate("c1")) is False

    @pytest.mark.asyncio
    async def test_ban_before_resume_stops_migration(self, seeded, root):
        seeded.providers.fail("insert")
        assert_err(await seeded.mesh.migrate_account_to_provider("c1"))
        assert_ok(await seeded.mesh.set_banned(root, "c1", True))

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_STEP_FAILED
        assert error.cause.code is ErrorCode.UNAUTHORIZED
        assert not error.retryable
        assert len(seeded.providers) == 1

    @pytest.mark.asyncio
    async def test_source_partition_down(self, seeded):
        seeded.customers.fail("get")

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.PARTITION_UNAVAILABLE
        assert error.retryable


class TestConflicts:
    """Tests for conflicting target identifiers."""

    @pytest.mark.asyncio
    async def test_duplicate_provider_id_is_fatal(self):
        world = build_world(provider_ids=("p1", "p1"))
        assert_ok(await world.mesh.register_account(customer("Ann")))
        assert_ok(await world.mesh.register_account(provider("Pat")))

        error = assert_err(await world.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_CONFLICT
        assert not error.retryable
        record = await latest(world, "c1")
        assert record.state is MigrationState.FAILED
        assert record.is_conflict and not record.is_resumable
        assert assert_ok(await world.customers.get("c1")) is not None

        again = assert_err(await world.mesh.migrate_account_to_provider("c1"))
        assert again.code is ErrorCode.MIGRATION_CONFLICT
        assert assert_ok(await world.mesh.recover_migrations(FAST_RETRY)) == []
        resumed = assert_err(await world.mesh.migrations.resume(record.migration_id))
        assert resumed.code is ErrorCode.MIGRATION_CONFLICT

    @pytest.mark.asyncio
    async def test_id_taken_in_other_partition_is_fatal(self, ann):
        world = build_world(provider_ids=("p1", "c2"))
        assert_ok(await world.mesh.register_account(customer("Ann")))
        assert_ok(await world.mesh.register_account(customer("Bob")))
        assert_ok(await world.mesh.register_account(provider("Pat")))
        conversation_id = await chat(world, ann)

        error = assert_err(await world.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_CONFLICT
        assert error.context["target_id"] == "c2"
        conversation = assert_ok(await world.relationship.get_conversation(conversation_id))
        assert "c1" in conversation.participant_ids

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one_provider(self, seeded):
        first, second = await asyncio.gather(
            seeded.mesh.migrate_account_to_provider("c1"),
            seeded.mesh.migrate_account_to_provider("c1"),
        )

        assert assert_ok(first) == "p2"
        assert assert_err(second).code is ErrorCode.NOT_FOUND
        assert len(seeded.providers) == 2
        assert assert_ok(await seeded.providers.get("p3")) is None


class TestResume:
    """Tests for failed steps and re-entry."""

    @pytest.mark.asyncio
    async def test_resume_after_rewrite_failure(self, seeded, ann, pat):
        conversation_id = await chat(seeded, ann)
        seeded.relationship.fail("rewrite_message_party")

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_STEP_FAILED
        assert error.retryable
        record = await latest(seeded, "c1")
        assert record.state is MigrationState.FAILED
        assert record.failed_from is MigrationState.ACCOUNT_CREATED_IN_TARGET
        assert record.target_id == "p2"
        assert seeded.mesh.metrics.migrations.get(state="failed") == 1

        assert assert_ok(await seeded.mesh.migrate_account_to_provider("c1")) == "p2"

        assert len(seeded.providers) == 2
        assert (await latest(seeded, "c1")).attempts == 2
        messages = assert_ok(await seeded.mesh.list_messages(conversation_id, pat))
        assert messages[0].sender_id == "p2"

    @pytest.mark.asyncio
    async def test_resume_merges_thread_opened_by_new_account(self, seeded, ann, pat):
        conversation_id = await chat(seeded, ann)
        seeded.relationship.fail("rewrite_participant")
        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))
        assert error.retryable
        assert (await latest(seeded, "c1")).failed_from is MigrationState.ACCOUNT_CREATED_IN_TARGET

        # The provider account is live before references move
        ann_provider = Principal("p2", Role.PROVIDER)
        fresh = assert_ok(await seeded.mesh.find_or_create_conversation(ann_provider, "p1"))
        assert fresh.id != conversation_id
        assert_ok(await seeded.mesh.append_message(fresh.id, ann_provider, "now a provider"))

        assert assert_ok(await seeded.mesh.migrate_account_to_provider("c1")) == "p2"

        conversations = assert_ok(await seeded.mesh.list_conversations(pat))
        assert [set(c.participant_ids) for c in conversations] == [{"p1", "p2"}]
        merged = conversations[0]
        assert merged.last_message_preview == "now a provider"
        messages = assert_ok(await seeded.mesh.list_messages(merged.id, pat))
        assert [(m.sender_id, m.content) for m in messages] == [
            ("p2", "hello"), ("p2", "now a provider"),
        ]
        assert assert_ok(await seeded.relationship.get_conversation(conversation_id)) is None

    @pytest.mark.asyncio
    async def test_leftover_references_block_deletion(self, seeded, ann):
        await chat(seeded, ann)

        async def rewrite_nothing(old_id, new_id):
            return Ok(0)

        seeded.relationship.rewrite_message_party = rewrite_nothing
        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_STEP_FAILED
        assert error.context["remaining_references"] == 1
        assert assert_ok(await seeded.customers.get("c1")) is not None

        del seeded.relationship.rewrite_message_party
        assert assert_ok(await seeded.mesh.migrate_account_to_provider("c1")) == "p2"
        assert assert_ok(await seeded.customers.get("c1")) is None

    @pytest.mark.asyncio
    async def test_failed_source_deletion_flags_stub(self, seeded):
        seeded.customers.fail("delete")

        error = assert_err(await seeded.mesh.migrate_account_to_provider("c1"))

        assert error.code is ErrorCode.MIGRATION_STEP_FAILED
        assert error.retryable
        stub = assert_ok(await seeded.customers.get("c1"))
        assert stub.migrated_to == "p2"
        assert assert_ok(await seeded.mesh.can_authenticate("c1")) is False
        assert not (await seeded.mesh.resolve_identity("c1")).is_known
        assert (await seeded.mesh.resolve_identity("p2")).is_known

        outcomes = assert_ok(await seeded.mesh.recover_migrations(FAST_RETRY))

        assert [(o.source_id, o.target_id, o.succeeded) for o in outcomes] == [("c1", "p2", True)]
        assert assert_ok(await seeded.customers.get("c1")) is None
        assert (await latest(seeded, "c1")).state is MigrationState.DONE


class TestRecovery:
    """Tests for the recovery pass."""

    @pytest.mark.asyncio
    async def test_interrupted_migration_is_resumed(self, seeded):
        record = MigrationRecord.start("c1", ProviderOverrides(city="York"))
        assert_ok(await seeded.journal.save(record))

        outcomes = assert_ok(await seeded.mesh.recover_migrations(FAST_RETRY))

        assert outcomes[0].succeeded
        account = assert_ok(await seeded.providers.get(outcomes[0].target_id))
        assert account.city == "York"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, seeded):
        assert_ok(await seeded.journal.save(MigrationRecord.start("c1")))
        seeded.customers.fail("get", times=1)

        outcomes = assert_ok(await seeded.mesh.recover_migrations(FAST_RETRY))

        assert outcomes[0].succeeded
        assert (await latest(seeded, "c1")).attempts == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, seeded):
        assert_ok(await seeded.journal.save(MigrationRecord.start("c1")))
        seeded.customers.fail("get", times=10)

        outcomes = assert_ok(await seeded.mesh.recover_migrations(FAST_RETRY))

        assert not outcomes[0].succeeded
        assert outcomes[0].error.code is ErrorCode.MIGRATION_STEP_FAILED
        record = await latest(seeded, "c1")
        assert record.attempts == 3
        assert record.is_resumable

    @pytest.mark.asyncio
    async def test_resume_unknown_migration(self, seeded):
        error = assert_err(await seeded.mesh.migrations.resume("missing"))
        assert error.code is ErrorCode.NOT_FOUND


class TestJournalRecord:
    """Tests for the saga record."""

    def test_forward_only(self):
        record = MigrationRecord.start("c1")
        with pytest.raises(ValueError):
            record.advance(MigrationState.DONE)

    def test_fail_and_resume(self):
        record = MigrationRecord.start("c1").advance(
            MigrationState.ACCOUNT_CREATED_IN_TARGET, target_id="p2"
        )
        failed = record.fail(StorageError.partition_unavailable("relationship", "rewrite"))

        assert failed.state is MigrationState.FAILED
        assert failed.is_resumable
        resumed = failed.resumed()
        assert resumed.state is MigrationState.ACCOUNT_CREATED_IN_TARGET
        assert resumed.error is None
        assert resumed.attempts == 2

    def test_redis_hash_encoding(self):
        record = MigrationRecord.start("c1", ProviderOverrides(display_name="Ann's Gardening"))
        record = record.advance(MigrationState.ACCOUNT_CREATED_IN_TARGET, target_id="p2")
        record = record.fail(MigrationError.conflict(record.migration_id, "customer", "p2"))

        data = record.to_hash()
        assert all(isinstance(value, str) for value in data.values())
        decoded = MigrationRecord.from_hash(data)
        assert decoded == record
        assert decoded.is_conflict
