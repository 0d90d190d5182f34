"""
Reliability module: bounded retry with backoff.
"""

from snapsync.reliability.retry import RetryPolicy, calculate_backoff, retry_with_backoff

__all__ = [
    "RetryPolicy",
    "calculate_backoff",
    "retry_with_backoff",
]
