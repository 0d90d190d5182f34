"""
Opt-in reconnection for the session channel.

The multiplexer never reconnects on its own. When RealtimeConfig.auto_reconnect
is set, the session attaches a ReconnectSupervisor: on an unplanned
disconnect it retries connect() with bounded exponential backoff and full
jitter, then gives up and leaves the controllers on polling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from snapsync.core.config import RealtimeConfig
from snapsync.core.errors import ChannelError
from snapsync.realtime.models import ConnectionState
from snapsync.realtime.multiplexer import ChannelMultiplexer
from snapsync.reliability.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)


class ReconnectSupervisor:
    """Watches a multiplexer and retries after unplanned disconnects."""

    __slots__ = ("_mux", "_policy", "_task", "_closed", "_gave_up")

    def __init__(
        self,
        mux: ChannelMultiplexer,
        config: Optional[RealtimeConfig] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        cfg = config or RealtimeConfig()
        self._mux = mux
        self._policy = policy or RetryPolicy.from_config(
            cfg.reconnect_base_ms, cfg.reconnect_max_ms, cfg.reconnect_max_attempts
        )
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._gave_up = False
        mux.add_state_listener(self._on_state)

    @property
    def reconnecting(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    def _on_state(self, state: ConnectionState, error: Optional[ChannelError]) -> None:
        # error is None for deliberate teardown
        if self._closed or state is not ConnectionState.DISCONNECTED or error is None:
            return
        if self.reconnecting or not self._mux.subscription_ids:
            return
        self._gave_up = False
        self._task = asyncio.get_running_loop().create_task(
            self._reconnect(), name=f"{self._mux.name}-reconnect"
        )

    async def _attempt(self) -> None:
        result = await self._mux.connect()
        if result.is_err():
            raise result.error

    async def _reconnect(self) -> None:
        # Let the failed connection finish tearing down before the first attempt
        await asyncio.sleep(0)
        result = await retry_with_backoff(
            self._attempt,
            self._policy,
            operation=f"reconnect:{self._mux.name}",
            should_continue=lambda: not self._closed and bool(self._mux.subscription_ids),
        )
        if result.is_ok():
            logger.info(f"Channel {self._mux.name} reconnected")
        else:
            self._gave_up = True
            logger.warning(
                f"Channel {self._mux.name} stays disconnected after retries: {result.error}"
            )

    async def close(self) -> None:
        self._closed = True
        self._mux.remove_state_listener(self._on_state)
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
