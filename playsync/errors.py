"""
Error types for PlaySync
"""

from typing import Optional


class PlaySyncError(Exception):
    """Base error for all PlaySync failures"""

    code = "PLAYSYNC_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class SyncConnectionError(PlaySyncError):
    """Dial to the relay failed or the transport closed abruptly"""

    code = "CONNECTION_ERROR"


class ProtocolError(PlaySyncError):
    """Malformed or unrecognized wire message"""

    code = "PROTOCOL_ERROR"


class BackendNotReadyError(PlaySyncError):
    """Playback backend has not finished initializing"""

    code = "BACKEND_NOT_READY"
