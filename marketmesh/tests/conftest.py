"""
Shared fixtures: in-memory partitions wired into a MarketMesh, with
deterministic identifiers and fault injection.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from marketmesh.core.types import Role
from marketmesh.service import Principal
from marketmesh.tests.support import World, admin, assert_ok, build_world, customer, provider


# =============================================================================
# FIXTURES
# =============================================================================
@pytest.fixture
def world() -> World:
    return build_world()


@pytest_asyncio.fixture
async def seeded(world: World) -> World:
    """c1 Ann and c2 Bob (customers), p1 Pat (provider), a1 Root (admin)."""
    mesh = world.mesh
    assert_ok(await mesh.register_account(customer("Ann")))
    assert_ok(await mesh.register_account(customer("Bob")))
    assert_ok(await mesh.register_account(provider("Pat")))
    assert_ok(await mesh.register_account(admin("Root")))
    return world


@pytest.fixture
def ann() -> Principal:
    return Principal("c1", Role.CUSTOMER)


@pytest.fixture
def bob() -> Principal:
    return Principal("c2", Role.CUSTOMER)


@pytest.fixture
def pat() -> Principal:
    return Principal("p1", Role.PROVIDER)


@pytest.fixture
def root() -> Principal:
    return Principal("a1", Role.ADMIN)
