from .backend import PlaybackBackend, PlayerState, VirtualBackend
from .engine import (
    ApplyResult,
    ConnectionStatus,
    ReconciliationEngine,
    compensate_position,
    seek_threshold,
)
from ..models import EndpointRole
from .session import SessionController

__all__ = [
    "PlaybackBackend",
    "PlayerState",
    "VirtualBackend",
    "ApplyResult",
    "ConnectionStatus",
    "EndpointRole",
    "ReconciliationEngine",
    "compensate_position",
    "seek_threshold",
    "SessionController",
]
