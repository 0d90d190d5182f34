"""
Test helpers shared across modules.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

ME = "u1"
FRIEND = "u2"
STRANGER = "u3"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until condition holds; fail after timeout."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 5) -> None:
    """Let already-scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
