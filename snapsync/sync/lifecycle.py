"""
App foreground/background tracking.

The host application reports state changes; observers (pollers, the
cache janitor) react only to transitions between foreground and
background.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class AppState(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"

    @property
    def is_foreground(self) -> bool:
        return self is AppState.ACTIVE


@runtime_checkable
class LifecycleObserver(Protocol):
    def on_foreground(self) -> None:
        ...

    def on_background(self) -> None:
        ...


class AppLifecycle:
    """Fans app state transitions out to observers."""

    __slots__ = ("_state", "_observers")

    def __init__(self, initial: AppState = AppState.ACTIVE) -> None:
        self._state = initial
        self._observers: list[LifecycleObserver] = []

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def is_foreground(self) -> bool:
        return self._state.is_foreground

    def add_observer(self, observer: LifecycleObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: LifecycleObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def set_state(self, state: AppState) -> None:
        previous, self._state = self._state, state
        if previous.is_foreground == state.is_foreground:
            return
        logger.info(f"App {previous.value} -> {state.value}")
        for observer in list(self._observers):
            try:
                if state.is_foreground:
                    observer.on_foreground()
                else:
                    observer.on_background()
            except Exception:
                logger.exception(f"Lifecycle observer {observer!r} failed")
