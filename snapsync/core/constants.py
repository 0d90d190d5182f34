"""
System-Wide Constants for the Sync Engine

All magic numbers and configuration defaults centralized here.

Time units:
- TTLs, windows and intervals are expressed in seconds (float)
- Backoff parameters are expressed in milliseconds (int)
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND: Final[float] = 1.0
MINUTE: Final[float] = 60 * SECOND
HOUR: Final[float] = 60 * MINUTE

SECOND_MS: Final[int] = 1000

# =============================================================================
# TABLE NAMES
# =============================================================================
TABLE_PROFILES: Final[str] = "profiles"
TABLE_FRIENDSHIPS: Final[str] = "friendships"
TABLE_STORIES: Final[str] = "stories"
TABLE_STORY_VIEWS: Final[str] = "story_views"
TABLE_VIBE_REELS: Final[str] = "vibe_reels"
TABLE_VIBE_REEL_VIEWS: Final[str] = "vibe_reel_views"
TABLE_CONVERSATIONS: Final[str] = "conversations"
TABLE_MESSAGES: Final[str] = "messages"

# =============================================================================
# CACHE KEY CLASSES
# =============================================================================
KEY_FRIENDS: Final[str] = "friends"
KEY_STORIES: Final[str] = "stories"
KEY_SNAPS: Final[str] = "snaps"
KEY_VIBE_CHECKS: Final[str] = "vibe_checks"
KEY_VIBE_REELS: Final[str] = "vibe_reels"
KEY_PROFILE: Final[str] = "profile"
KEY_CONVERSATIONS: Final[str] = "conversations"
KEY_CONVERSATION_MESSAGES: Final[str] = "conversation_messages"

# Separates a key class from its instance suffix ("profile:<uid>")
KEY_SEPARATOR: Final[str] = ":"

# =============================================================================
# CACHE TTLS
# =============================================================================
DEFAULT_TTL_S: Final[float] = 5 * MINUTE
CLEANUP_INTERVAL_S: Final[float] = 10 * MINUTE

FRIENDS_TTL_S: Final[float] = 10 * MINUTE
STORIES_TTL_S: Final[float] = 2 * MINUTE
SNAPS_TTL_S: Final[float] = 5 * MINUTE
VIBE_CHECKS_TTL_S: Final[float] = 5 * MINUTE
VIBE_REELS_TTL_S: Final[float] = 5 * MINUTE
PROFILE_TTL_S: Final[float] = 30 * MINUTE
CONVERSATIONS_TTL_S: Final[float] = 2 * MINUTE
MESSAGES_TTL_S: Final[float] = 30 * SECOND

# =============================================================================
# RECONCILIATION WINDOWS
# =============================================================================
STORIES_WINDOW_S: Final[float] = 0.5
REELS_WINDOW_S: Final[float] = 0.5
FRIENDS_WINDOW_S: Final[float] = 0.3
MESSAGES_WINDOW_S: Final[float] = 0.3
MAX_WAIT_S: Final[float] = 2.0

# Sliding windows outside this range are rejected by config validation
MIN_WINDOW_S: Final[float] = 0.05
MAX_WINDOW_S: Final[float] = 5.0

# =============================================================================
# POLLING
# =============================================================================
FRIENDS_POLL_S: Final[float] = 1.0
VIBE_REELS_POLL_S: Final[float] = 1.0
CONVERSATIONS_POLL_S: Final[float] = 10.0
POLL_INITIAL_DELAY_S: Final[float] = 0.5

MIN_POLL_S: Final[float] = 1.0
MAX_POLL_S: Final[float] = 10 * MINUTE

# =============================================================================
# REALTIME
# =============================================================================
CHANNEL_NAME: Final[str] = "app-realtime-unified"
RECONNECT_BASE_MS: Final[int] = 500
RECONNECT_MAX_MS: Final[int] = 30 * SECOND_MS
RECONNECT_MAX_ATTEMPTS: Final[int] = 5

# =============================================================================
# OPTIMISTIC WRITES
# =============================================================================
# Field stamped on placeholders and echoed by the service on the stored row
CORRELATION_FIELD: Final[str] = "client_correlation_id"
PENDING_FLAG_FIELD: Final[str] = "_pending"
PLACEHOLDER_ID_PREFIX: Final[str] = "pending-"

# =============================================================================
# ENVIRONMENT
# =============================================================================
ENV_PREFIX: Final[str] = "SNAPSYNC_"
