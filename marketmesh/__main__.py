#!/usr/bin/env python3
"""
Marketplace Partition Mesh CLI

Commands:
    marketmesh resolve ID   Resolve an account id across the partitions
    marketmesh recover      Resume every pending migration
    marketmesh demo         Walk through a conversation and a migration
                            on in-memory partitions

Usage:
    python -m marketmesh demo

    # Against real partitions
    MARKETMESH_PROVIDER_BACKEND=postgres \\
    MARKETMESH_PROVIDER_DSN=postgresql://... python -m marketmesh resolve p1
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional

from marketmesh import __version__
from marketmesh.core.config import MarketMeshConfig
from marketmesh.core.models import AccountDraft
from marketmesh.core.types import Role
from marketmesh.migration.journal import ProviderOverrides
from marketmesh.observability.logging import LogLevel, setup_logging
from marketmesh.service import MarketMesh, Principal


def _load_config(use_env: bool) -> MarketMeshConfig:
    if not use_env:
        return MarketMeshConfig()
    config_result = MarketMeshConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}", file=sys.stderr)
        sys.exit(2)
    return config_result.unwrap()


def _create_mesh(config: MarketMeshConfig, configure_logging: bool = True) -> MarketMesh:
    if configure_logging:
        observability = config.observability
        setup_logging(LogLevel.parse(observability.log_level), json_output=observability.log_json)
    created = MarketMesh.create(config)
    if created.is_err():
        print(f"Validation error: {created.error}", file=sys.stderr)
        sys.exit(2)
    return created.unwrap()


# =============================================================================
# COMMANDS
# =============================================================================
async def cmd_resolve(account_id: str) -> int:
    async with _create_mesh(_load_config(use_env=True)) as mesh:
        identity = await mesh.resolve_identity(account_id)
        print(json.dumps(identity.to_dict(), indent=2))
        return 0 if identity.is_known else 1


async def cmd_recover() -> int:
    async with _create_mesh(_load_config(use_env=True)) as mesh:
        result = await mesh.recover_migrations()
        if result.is_err():
            print(f"Recovery failed: {result.error}", file=sys.stderr)
            return 1
        outcomes = result.unwrap()
        for outcome in outcomes:
            status = "done" if outcome.succeeded else f"failed: {outcome.error}"
            print(f"{outcome.migration_id} {outcome.source_id} -> {outcome.target_id}: {status}")
        print(f"{sum(o.succeeded for o in outcomes)}/{len(outcomes)} migrations recovered")
        return 0 if all(o.succeeded for o in outcomes) else 1


async def cmd_demo() -> int:
    """
    Demonstrate the mesh with in-memory partitions (no external deps).

    A customer messages a provider, a stranger is refused, then the
    customer becomes a provider and the history follows the new id.
    """
    print("\n" + "=" * 60)
    print("Marketplace Partition Mesh - Local Demo")
    print("=" * 60 + "\n")

    config = MarketMeshConfig()
    setup_logging(LogLevel.WARNING, json_output=False)
    async with _create_mesh(config, configure_logging=False) as mesh:
        c1 = (await mesh.register_account(AccountDraft(
            Role.CUSTOMER, "Ann", "ann@example.com", "hash-ann", city="Leeds"
        ))).unwrap()
        c2 = (await mesh.register_account(AccountDraft(
            Role.CUSTOMER, "Bob", "bob@example.com", "hash-bob"
        ))).unwrap()
        p1 = (await mesh.register_account(AccountDraft(
            Role.PROVIDER, "Pat's Plumbing", "pat@example.com", "hash-pat"
        ))).unwrap()
        print(f"1. Registered customer {c1.id}, customer {c2.id}, provider {p1.id}")

        ann = Principal(c1.id, Role.CUSTOMER)
        pat = Principal(p1.id, Role.PROVIDER)
        bob = Principal(c2.id, Role.CUSTOMER)

        conv = (await mesh.find_or_create_conversation(ann, p1.id)).unwrap()
        again = (await mesh.find_or_create_conversation(pat, c1.id)).unwrap()
        print(f"2. Conversation {conv.id} (found again from the other side: {again.id == conv.id})")

        await mesh.append_message(conv.id, ann, "hello")
        for view in (await mesh.list_message_views(conv.id, pat)).unwrap():
            print(f"3. {view.sender.display_name} -> {view.receiver.display_name}: {view.message.content}")

        refused = await mesh.append_message(conv.id, bob, "hi")
        print(f"4. Non-participant append refused: {refused.error}")

        migrated = await mesh.migrate_account_to_provider(
            c1.id, ProviderOverrides(display_name="Ann's Gardening")
        )
        if migrated.is_err():
            print(f"   Migration error: {migrated.error}")
            return 1
        p2 = migrated.unwrap()
        print(f"5. Migrated {c1.id} -> provider {p2}")

        for message in (await mesh.list_messages(conv.id, pat)).unwrap():
            print(f"6. Message '{message.content}' now attributed to {message.sender_id}")

        old = await mesh.resolve_identity(c1.id)
        new = await mesh.resolve_identity(p2)
        print(f"7. {c1.id} resolves as {old.role.value}; {p2} resolves as {new.role.value} "
              f"'{new.display_name}'")

    print("\n✓ Demo complete")
    print("=" * 60 + "\n")
    return 0


# =============================================================================
# ENTRY POINTS
# =============================================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketmesh",
        description="Marketplace partition mesh",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve an account id")
    resolve_parser.add_argument("account_id", help="Opaque account identifier")

    subparsers.add_parser("recover", help="Resume pending migrations")
    subparsers.add_parser("demo", help="Run the in-memory demo")
    return parser


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    if args.command == "resolve":
        return await cmd_resolve(args.account_id)
    if args.command == "recover":
        return await cmd_recover()
    return await cmd_demo()


def run() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    run()
