"""
Configuration Management for the Sync Engine

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from snapsync.core.types import Result, Ok, Err
from snapsync.core import constants as C


def _env(name: str, default: str, environ: Mapping[str, str]) -> str:
    return environ.get(f"{C.ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool, environ: Mapping[str, str]) -> bool:
    raw = environ.get(f"{C.ENV_PREFIX}{name}")
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{C.ENV_PREFIX}{name}={raw!r} is not a boolean")


@dataclass(frozen=True)
class CacheConfig:
    """CacheStore TTLs per key class."""

    default_ttl_s: float = C.DEFAULT_TTL_S
    cleanup_interval_s: float = C.CLEANUP_INTERVAL_S
    friends_ttl_s: float = C.FRIENDS_TTL_S
    stories_ttl_s: float = C.STORIES_TTL_S
    snaps_ttl_s: float = C.SNAPS_TTL_S
    vibe_checks_ttl_s: float = C.VIBE_CHECKS_TTL_S
    vibe_reels_ttl_s: float = C.VIBE_REELS_TTL_S
    profile_ttl_s: float = C.PROFILE_TTL_S
    conversations_ttl_s: float = C.CONVERSATIONS_TTL_S
    messages_ttl_s: float = C.MESSAGES_TTL_S

    @property
    def class_ttls(self) -> dict[str, float]:
        """TTL per key class, keyed by the prefix before the separator."""
        return {
            C.KEY_FRIENDS: self.friends_ttl_s,
            C.KEY_STORIES: self.stories_ttl_s,
            C.KEY_SNAPS: self.snaps_ttl_s,
            C.KEY_VIBE_CHECKS: self.vibe_checks_ttl_s,
            C.KEY_VIBE_REELS: self.vibe_reels_ttl_s,
            C.KEY_PROFILE: self.profile_ttl_s,
            C.KEY_CONVERSATIONS: self.conversations_ttl_s,
            C.KEY_CONVERSATION_MESSAGES: self.messages_ttl_s,
        }


@dataclass(frozen=True)
class ThrottleConfig:
    """Reconciliation debounce windows."""

    stories_window_s: float = C.STORIES_WINDOW_S
    reels_window_s: float = C.REELS_WINDOW_S
    friends_window_s: float = C.FRIENDS_WINDOW_S
    messages_window_s: float = C.MESSAGES_WINDOW_S
    max_wait_s: Optional[float] = C.MAX_WAIT_S

    @property
    def windows(self) -> dict[str, float]:
        return {
            "stories": self.stories_window_s,
            "reels": self.reels_window_s,
            "friends": self.friends_window_s,
            "messages": self.messages_window_s,
        }


@dataclass(frozen=True)
class PollingConfig:
    """Foreground polling intervals."""

    friends_interval_s: float = C.FRIENDS_POLL_S
    vibe_reels_interval_s: float = C.VIBE_REELS_POLL_S
    conversations_interval_s: float = C.CONVERSATIONS_POLL_S
    initial_delay_s: float = C.POLL_INITIAL_DELAY_S


@dataclass(frozen=True)
class RealtimeConfig:
    """Realtime channel configuration."""

    channel_name: str = C.CHANNEL_NAME
    auto_reconnect: bool = False
    reconnect_base_ms: int = C.RECONNECT_BASE_MS
    reconnect_max_ms: int = C.RECONNECT_MAX_MS
    reconnect_max_attempts: int = C.RECONNECT_MAX_ATTEMPTS


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and telemetry configuration."""

    log_level: str = "INFO"
    log_json: bool = False
    metrics_enabled: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Root configuration for the sync engine."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Result[SyncConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with SNAPSYNC_.
        Example: SNAPSYNC_CACHE_DEFAULT_TTL_S, SNAPSYNC_REALTIME_AUTO_RECONNECT
        """
        env = os.environ if environ is None else environ
        try:
            cache = CacheConfig(
                default_ttl_s=float(_env("CACHE_DEFAULT_TTL_S", str(C.DEFAULT_TTL_S), env)),
                cleanup_interval_s=float(
                    _env("CACHE_CLEANUP_INTERVAL_S", str(C.CLEANUP_INTERVAL_S), env)
                ),
                messages_ttl_s=float(_env("CACHE_MESSAGES_TTL_S", str(C.MESSAGES_TTL_S), env)),
            )

            raw_max_wait = _env("THROTTLE_MAX_WAIT_S", str(C.MAX_WAIT_S), env)
            throttle = ThrottleConfig(
                stories_window_s=float(
                    _env("THROTTLE_STORIES_WINDOW_S", str(C.STORIES_WINDOW_S), env)
                ),
                reels_window_s=float(_env("THROTTLE_REELS_WINDOW_S", str(C.REELS_WINDOW_S), env)),
                friends_window_s=float(
                    _env("THROTTLE_FRIENDS_WINDOW_S", str(C.FRIENDS_WINDOW_S), env)
                ),
                messages_window_s=float(
                    _env("THROTTLE_MESSAGES_WINDOW_S", str(C.MESSAGES_WINDOW_S), env)
                ),
                max_wait_s=None if raw_max_wait.lower() in ("", "none") else float(raw_max_wait),
            )

            polling = PollingConfig(
                friends_interval_s=float(
                    _env("POLLING_FRIENDS_INTERVAL_S", str(C.FRIENDS_POLL_S), env)
                ),
                vibe_reels_interval_s=float(
                    _env("POLLING_VIBE_REELS_INTERVAL_S", str(C.VIBE_REELS_POLL_S), env)
                ),
                conversations_interval_s=float(
                    _env("POLLING_CONVERSATIONS_INTERVAL_S", str(C.CONVERSATIONS_POLL_S), env)
                ),
            )

            realtime = RealtimeConfig(
                channel_name=_env("REALTIME_CHANNEL_NAME", C.CHANNEL_NAME, env),
                auto_reconnect=_env_bool("REALTIME_AUTO_RECONNECT", False, env),
                reconnect_max_attempts=int(
                    _env("REALTIME_RECONNECT_MAX_ATTEMPTS", str(C.RECONNECT_MAX_ATTEMPTS), env)
                ),
            )

            observability = ObservabilityConfig(
                log_level=_env("LOG_LEVEL", "INFO", env).upper(),
                log_json=_env_bool("LOG_JSON", False, env),
                metrics_enabled=_env_bool("METRICS_ENABLED", True, env),
            )

            return Ok(
                cls(
                    cache=cache,
                    throttle=throttle,
                    polling=polling,
                    realtime=realtime,
                    observability=observability,
                )
            )
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        for name, ttl in (("default", self.cache.default_ttl_s), *self.cache.class_ttls.items()):
            if ttl <= 0:
                return Err(f"Cache TTL for '{name}' must be positive")
        if self.cache.cleanup_interval_s <= 0:
            return Err("Cache cleanup interval must be positive")

        for name, window in self.throttle.windows.items():
            if not C.MIN_WINDOW_S <= window <= C.MAX_WINDOW_S:
                return Err(
                    f"Throttle window '{name}' must be within "
                    f"[{C.MIN_WINDOW_S}, {C.MAX_WINDOW_S}]s"
                )
            if self.throttle.max_wait_s is not None and self.throttle.max_wait_s < window:
                return Err(f"Throttle max_wait_s cannot be shorter than the '{name}' window")

        for name, interval in (
            ("friends", self.polling.friends_interval_s),
            ("vibe_reels", self.polling.vibe_reels_interval_s),
            ("conversations", self.polling.conversations_interval_s),
        ):
            if not C.MIN_POLL_S <= interval <= C.MAX_POLL_S:
                return Err(
                    f"Polling interval '{name}' must be within [{C.MIN_POLL_S}, {C.MAX_POLL_S}]s"
                )
        if self.polling.initial_delay_s < 0:
            return Err("Polling initial delay cannot be negative")

        if self.realtime.reconnect_max_attempts < 1:
            return Err("Reconnect max attempts must be >= 1")
        if self.realtime.reconnect_base_ms > self.realtime.reconnect_max_ms:
            return Err("Reconnect base delay cannot exceed max delay")
        return Ok(None)
