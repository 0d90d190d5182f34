"""
Session change events.

One SessionChanged is published whenever the signed-in user goes away
or is replaced. CacheStore and GlobalEntityRegistry consume it to drop
the departing user's data; the host application may listen too.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from snapsync.core.types import Timestamp, UserId


class SessionChangeReason(Enum):
    SIGN_IN = "sign_in"
    SIGN_OUT = "sign_out"
    SWITCH_USER = "switch_user"
    AUTH_EXPIRED = "auth_expired"


@dataclass(frozen=True, slots=True)
class SessionChanged:
    previous_user_id: Optional[UserId]
    user_id: Optional[UserId]
    reason: SessionChangeReason
    timestamp: Timestamp = field(default_factory=Timestamp.now)

    @property
    def is_sign_out(self) -> bool:
        return self.user_id is None
