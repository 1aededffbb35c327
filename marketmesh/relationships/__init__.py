"""
Relationships module: conversations and messages across partitions.
"""

from marketmesh.relationships.models import ConversationView, MessageView, RewriteReport
from marketmesh.relationships.store import RelationshipStore

__all__ = [
    "ConversationView",
    "MessageView",
    "RewriteReport",
    "RelationshipStore",
]
