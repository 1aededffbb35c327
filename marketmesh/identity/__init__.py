"""
Identity module: resolving opaque identifiers and managing accounts.
"""

from marketmesh.identity.models import ResolvedIdentity
from marketmesh.identity.resolver import IdentityResolver
from marketmesh.identity.directory import AccountDirectory, LocatedAccount

__all__ = [
    "ResolvedIdentity",
    "IdentityResolver",
    "AccountDirectory",
    "LocatedAccount",
]
