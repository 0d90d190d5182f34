"""
Realtime module: session-wide change feed multiplexing.
"""

from snapsync.remote.protocol import Change
from snapsync.realtime.models import (
    ConnectionState,
    Subscription,
    TableFilter,
)
from snapsync.realtime.multiplexer import ChannelMultiplexer
from snapsync.realtime.reconnect import ReconnectSupervisor

__all__ = [
    "Change",
    "ConnectionState",
    "Subscription",
    "TableFilter",
    "ChannelMultiplexer",
    "ReconnectSupervisor",
]
