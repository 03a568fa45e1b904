"""
PlaySync - keeps media playback in step across endpoints through a relay
"""

from .relay import RelayServer, ConnectionRegistry
from .endpoint import ReconciliationEngine, SessionController, PlaybackBackend
from .models import PlaybackAction, PlaybackEvent, SessionLoad

__all__ = [
    "RelayServer",
    "ConnectionRegistry",
    "ReconciliationEngine",
    "SessionController",
    "PlaybackBackend",
    "PlaybackAction",
    "PlaybackEvent",
    "SessionLoad",
]
