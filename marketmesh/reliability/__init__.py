"""
Reliability module: bounded partition calls and retry with backoff.
"""

from marketmesh.reliability.retry import RetryPolicy, retry_with_backoff
from marketmesh.reliability.timeout import guarded_call

__all__ = [
    "RetryPolicy",
    "retry_with_backoff",
    "guarded_call",
]
