"""Playback backend contract.

The sync core drives a media player it knows nothing about beyond this
interface. ``VirtualBackend`` keeps a clock-driven playhead in memory and is
used by the headless endpoint and by the tests.
"""

import time
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Callable, List, Optional

from loguru import logger

from ..errors import BackendNotReadyError


class PlayerState(IntEnum):
    """Player states, numbered like the YouTube IFrame API"""
    UNSTARTED = -1
    ENDED = 0
    PLAYING = 1
    PAUSED = 2
    BUFFERING = 3
    CUED = 5


StateCallback = Callable[[PlayerState], None]


class PlaybackBackend(ABC):
    """Abstract base class for playback backends."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the player finished initializing."""

    @abstractmethod
    def play(self) -> None:
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def seek(self, position: float) -> None:
        """Jump to ``position`` seconds."""

    @abstractmethod
    def load(self, item_id: str) -> None:
        """Load an item, leaving it cued at position 0."""

    @abstractmethod
    def get_current_position(self) -> float:
        pass

    @abstractmethod
    def get_state(self) -> PlayerState:
        pass

    @abstractmethod
    def on_state_change(self, callback: StateCallback) -> None:
        """Register a callback fired whenever the player state changes."""

    def ensure_ready(self) -> None:
        if not self.is_ready:
            raise BackendNotReadyError("Playback backend not ready")


class VirtualBackend(PlaybackBackend):
    """In-memory player whose position advances with a monotonic clock."""

    def __init__(
        self,
        ready: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ready = ready
        self._clock = clock
        self._callbacks: List[StateCallback] = []

        self.item_id: Optional[str] = None
        self._state = PlayerState.UNSTARTED
        self._position = 0.0
        self._anchor: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        self._ready = True

    def play(self) -> None:
        self.ensure_ready()
        if self._state == PlayerState.PLAYING:
            return
        self._anchor = self._clock()
        self._set_state(PlayerState.PLAYING)

    def pause(self) -> None:
        self.ensure_ready()
        if self._state == PlayerState.PLAYING:
            self._position = self.get_current_position()
            self._anchor = None
        self._set_state(PlayerState.PAUSED)

    def seek(self, position: float) -> None:
        self.ensure_ready()
        self._position = max(0.0, position)
        if self._state == PlayerState.PLAYING:
            self._anchor = self._clock()

    def load(self, item_id: str) -> None:
        self.ensure_ready()
        self.item_id = item_id
        self._position = 0.0
        self._anchor = None
        self._set_state(PlayerState.CUED)

    def get_current_position(self) -> float:
        if self._state == PlayerState.PLAYING and self._anchor is not None:
            return self._position + (self._clock() - self._anchor)
        return self._position

    def get_state(self) -> PlayerState:
        return self._state

    def on_state_change(self, callback: StateCallback) -> None:
        self._callbacks.append(callback)

    def _set_state(self, state: PlayerState) -> None:
        if state == self._state:
            return
        self._state = state
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.warning(f"State callback error: {e}")
