"""
Bounded Retry for Channel Reconnects

Only the realtime channel retries on its own, and only when the engine is
configured to reconnect. Reconciliation and polling never retry: a failed
flush or tick is logged and the next scheduled run covers the gap.

Delays follow capped exponential growth with full jitter:

    delay(n) = uniform(0, min(max_delay, base * factor ** n))

Each failure is classified as soon as it is caught. An expired session
ends the loop immediately, since no amount of waiting brings a token back.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from snapsync.core import constants as C
from snapsync.core.errors import AuthExpiredError, SyncError, classify_exception
from snapsync.core.types import Err, Ok, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry, and how long to wait in between."""

    max_retries: int = C.RECONNECT_MAX_ATTEMPTS - 1
    base_delay_ms: int = C.RECONNECT_BASE_MS
    max_delay_ms: int = C.RECONNECT_MAX_MS
    exponential_base: float = 2.0
    jitter: bool = True
    attempt_timeout_s: Optional[float] = 30.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_config(cls, base_ms: int, max_ms: int, max_attempts: int) -> RetryPolicy:
        """Translate RealtimeConfig's attempt count into a retry count."""
        return cls(
            max_retries=max(0, max_attempts - 1),
            base_delay_ms=base_ms,
            max_delay_ms=max_ms,
        )

    def delay_ms(self, retry_index: int) -> float:
        return calculate_backoff(
            retry_index,
            self.base_delay_ms,
            self.max_delay_ms,
            self.exponential_base,
            self.jitter,
        )


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    ceiling = min(float(max_delay_ms), base_delay_ms * exponential_base ** attempt)
    return random.uniform(0.0, ceiling) if jitter else ceiling


async def _run_once(func: Callable[[], Awaitable[T]], timeout_s: Optional[float]) -> T:
    if timeout_s is None:
        return await func()
    return await asyncio.wait_for(func(), timeout=timeout_s)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    operation: str = "operation",
    should_continue: Optional[Callable[[], bool]] = None,
) -> Result[T, SyncError]:
    """
    Await ``func`` until it succeeds or the policy runs out.

    ``should_continue`` is consulted before every attempt so an owner that
    has been closed stops the loop without another round trip. The Err
    carries the last classified failure with ``context["attempts"]`` set.
    """
    policy = policy or RetryPolicy()
    attempts = 0
    last_error: Optional[SyncError] = None

    while attempts < policy.max_attempts:
        if should_continue is not None and not should_continue():
            logger.debug(f"{operation} abandoned after {attempts} attempt(s)")
            break

        if attempts:
            pause_ms = policy.delay_ms(attempts - 1)
            logger.debug(f"{operation}: attempt {attempts + 1} in {pause_ms:.0f}ms")
            await asyncio.sleep(pause_ms / 1000)
            if should_continue is not None and not should_continue():
                break

        attempts += 1
        try:
            return Ok(await _run_once(func, policy.attempt_timeout_s))
        except Exception as e:
            last_error = classify_exception(e, operation)
            logger.debug(f"{operation}: attempt {attempts} failed: {last_error}")

        if isinstance(last_error, AuthExpiredError):
            break

    if last_error is None:
        last_error = classify_exception(
            asyncio.CancelledError(f"{operation} stopped before completing"), operation
        )
    last_error.context.setdefault("attempts", attempts)
    return Err(last_error)
