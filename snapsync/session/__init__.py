"""
Session module: per-user wiring, teardown and session change events.
"""

from snapsync.session.events import SessionChanged, SessionChangeReason
from snapsync.session.manager import Session, SessionManager

__all__ = [
    "SessionChanged",
    "SessionChangeReason",
    "Session",
    "SessionManager",
]
