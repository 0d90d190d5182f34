"""
Cache key catalogue.

A logical key names a class of data ("friends", "user_story") and may
carry an instance suffix after the separator ("profile:<user_id>",
"conversation_messages:<conversation_id>"). The owner (session user) is a
separate part of the composite key, never folded into the string.

Each logical key maps to a TTL class; the TTL for a key is resolved from
the part before the separator.
"""

from __future__ import annotations

from typing import Optional

from snapsync.core import constants as C
from snapsync.core.config import CacheConfig


class CacheKey:
    """Logical cache keys and the TTL class each belongs to."""

    FRIENDS = C.KEY_FRIENDS
    FRIEND_REQUESTS_RECEIVED = "friend_requests_received"
    FRIEND_REQUESTS_SENT = "friend_requests_sent"
    STORIES = C.KEY_STORIES
    USER_STORY = "user_story"
    INBOX_SNAPS = "inbox_snaps"
    SENT_SNAPS = "sent_snaps"
    INBOX_VIBE_CHECKS = "inbox_vibe_checks"
    SENT_VIBE_CHECKS = "sent_vibe_checks"
    VIBE_REELS = C.KEY_VIBE_REELS
    USER_PROFILE = "user_profile"
    PROFILE = C.KEY_PROFILE
    CONVERSATIONS = C.KEY_CONVERSATIONS
    CONVERSATION_MESSAGES = C.KEY_CONVERSATION_MESSAGES

    # logical key -> TTL class
    TTL_CLASSES: dict[str, str] = {
        FRIENDS: C.KEY_FRIENDS,
        FRIEND_REQUESTS_RECEIVED: C.KEY_FRIENDS,
        FRIEND_REQUESTS_SENT: C.KEY_FRIENDS,
        STORIES: C.KEY_STORIES,
        USER_STORY: C.KEY_STORIES,
        INBOX_SNAPS: C.KEY_SNAPS,
        SENT_SNAPS: C.KEY_SNAPS,
        INBOX_VIBE_CHECKS: C.KEY_VIBE_CHECKS,
        SENT_VIBE_CHECKS: C.KEY_VIBE_CHECKS,
        VIBE_REELS: C.KEY_VIBE_REELS,
        USER_PROFILE: C.KEY_PROFILE,
        PROFILE: C.KEY_PROFILE,
        CONVERSATIONS: C.KEY_CONVERSATIONS,
        CONVERSATION_MESSAGES: C.KEY_CONVERSATION_MESSAGES,
    }

    @staticmethod
    def scoped(base: str, suffix: str) -> str:
        """Instance key, e.g. scoped(PROFILE, uid) -> 'profile:<uid>'."""
        return f"{base}{C.KEY_SEPARATOR}{suffix}"

    @classmethod
    def profile(cls, user_id: str) -> str:
        return cls.scoped(cls.PROFILE, user_id)

    @classmethod
    def messages(cls, conversation_id: str) -> str:
        return cls.scoped(cls.CONVERSATION_MESSAGES, conversation_id)

    @staticmethod
    def base_of(key: str) -> str:
        return key.split(C.KEY_SEPARATOR, 1)[0]

    @classmethod
    def ttl_class(cls, key: str) -> Optional[str]:
        return cls.TTL_CLASSES.get(cls.base_of(key))


def resolve_ttl(key: str, config: CacheConfig) -> float:
    """TTL in seconds for a logical key, falling back to the default TTL."""
    ttl_class = CacheKey.ttl_class(key)
    if ttl_class is None:
        return config.default_ttl_s
    return config.class_ttls.get(ttl_class, config.default_ttl_s)
