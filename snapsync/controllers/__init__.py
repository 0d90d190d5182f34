"""
Controllers module: per-entity read models composed from the sync primitives.
"""

from snapsync.controllers.state_machine import (
    ControllerState,
    ControllerStateEvent,
    ControllerStateMachine,
    TransitionGuard,
    Trigger,
)
from snapsync.controllers.base import SubscriptionSpec, SyncContext, SyncController
from snapsync.controllers.friends import FriendsController, FriendsState
from snapsync.controllers.stories import StoriesController, StoriesState
from snapsync.controllers.vibe_reels import ReelPartition, VibeReelsController
from snapsync.controllers.conversations import ConversationsController, ConversationThread
from snapsync.controllers.profiles import ProfileController, ProfileDirectory, load_profile

__all__ = [
    "ControllerState",
    "ControllerStateEvent",
    "ControllerStateMachine",
    "TransitionGuard",
    "Trigger",
    "SubscriptionSpec",
    "SyncContext",
    "SyncController",
    "FriendsController",
    "FriendsState",
    "StoriesController",
    "StoriesState",
    "ReelPartition",
    "VibeReelsController",
    "ConversationsController",
    "ConversationThread",
    "ProfileController",
    "ProfileDirectory",
    "load_profile",
]
