"""
Integration Tests: MarketMesh Facade and CLI

Tests:
    - Role checks for admin-only and self-only operations
    - Wiring from configuration
    - Metrics export
    - The in-memory demo command
"""

import pytest

from marketmesh.__main__ import main
from marketmesh.core.config import MarketMeshConfig, PartitionConfig
from marketmesh.core.errors import ErrorCode
from marketmesh.core.models import ProfileUpdate
from marketmesh.core.types import PartitionName, Role
from marketmesh.migration.journal import InMemoryMigrationJournal
from marketmesh.service import MarketMesh
from marketmesh.tests.support import assert_err, assert_ok


class TestAdminChecks:
    """Tests for principal role enforcement."""

    @pytest.mark.asyncio
    async def test_admin_delete_requires_admin(self, seeded, ann, pat):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))

        for principal in (ann, pat):
            error = assert_err(await mesh.admin_delete_conversation(conversation.id, principal))
            assert error.code is ErrorCode.UNAUTHORIZED

        assert assert_ok(await seeded.relationship.get_conversation(conversation.id)) is not None

    @pytest.mark.asyncio
    async def test_admin_list_conversations(self, seeded, ann, bob, root):
        mesh = seeded.mesh
        conversation = assert_ok(await mesh.find_or_create_conversation(ann, "p1"))
        assert_ok(await mesh.soft_delete_conversation(conversation.id, ann))

        refused = assert_err(await mesh.admin_list_conversations(bob))
        views = assert_ok(await mesh.admin_list_conversations(root))

        assert refused.code is ErrorCode.UNAUTHORIZED
        assert [v.conversation.id for v in views] == [conversation.id]
        assert {p.display_name for p in views[0].participants} == {"Ann", "Pat"}

    @pytest.mark.asyncio
    async def test_ban_and_listing_are_admin_only(self, seeded, ann, root):
        mesh = seeded.mesh

        assert assert_err(await mesh.set_banned(ann, "c2", True)).code is ErrorCode.UNAUTHORIZED
        assert assert_err(await mesh.list_accounts(ann)).code is ErrorCode.UNAUTHORIZED

        assert assert_ok(await mesh.set_banned(root, "c2", True)).banned
        assert assert_ok(await mesh.can_authenticate("c2")) is False
        providers = assert_ok(await mesh.list_accounts(root, Role.PROVIDER))
        assert [a.id for a in providers] == ["p1"]

    @pytest.mark.asyncio
    async def test_profile_update_is_self_or_admin(self, seeded, ann, bob, root):
        mesh = seeded.mesh
        update = ProfileUpdate(city="Hull")

        assert assert_err(await mesh.update_profile(bob, "c1", update)).code is ErrorCode.UNAUTHORIZED
        assert assert_ok(await mesh.update_profile(ann, "c1", update)).city == "Hull"
        assert assert_ok(await mesh.update_profile(root, "c1", ProfileUpdate(city="York"))).city == "York"


class TestWiring:
    """Tests for building the mesh from configuration."""

    def test_invalid_config_is_rejected(self):
        config = MarketMeshConfig(partitions={PartitionName.PROVIDER: PartitionConfig(backend="postgres")})

        error = assert_err(MarketMesh.create(config))

        assert error.code is ErrorCode.INTERNAL_CONFIGURATION_ERROR

    @pytest.mark.asyncio
    async def test_default_config_runs_in_memory(self):
        async with assert_ok(MarketMesh.create(journal=InMemoryMigrationJournal())) as mesh:
            identity = await mesh.resolve_identity("anyone")
            assert not identity.is_known
            assert set(mesh.partitions.connected) == {
                PartitionName.PROVIDER, PartitionName.CUSTOMER, PartitionName.ADMIN
            }
        assert mesh.partitions.connected == []

    @pytest.mark.asyncio
    async def test_metrics_export(self, seeded, ann):
        assert_ok(await seeded.mesh.find_or_create_conversation(ann, "p1"))

        exported = seeded.mesh.metrics.collector.export_prometheus()

        assert "marketmesh_identity_probes_total" in exported
        assert "marketmesh_relationship_op_seconds" in exported


class TestCli:
    """Tests for the command line."""

    @pytest.mark.asyncio
    async def test_demo(self, capsys, monkeypatch):
        monkeypatch.setattr("marketmesh.__main__.setup_logging", lambda *args, **kwargs: None)

        assert await main(["demo"]) == 0

        out = capsys.readouterr().out
        assert "Non-participant append refused" in out
        assert "resolves as unknown" in out
        assert "Demo complete" in out
