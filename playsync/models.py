"""
Wire models for PlaySync
"""

import time
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

from .errors import ProtocolError

HANDSHAKE_TYPE = "CONNECTED"
SESSION_LOAD_TYPE = "LOAD_VIDEO"


class PlaybackAction(str, Enum):
    PLAY = "PLAY"
    PAUSE = "PAUSE"
    SEEK = "SEEK"


class EndpointRole(str, Enum):
    HOST = "host"  # dialed into, drives drift correction
    CLIENT = "client"  # dials out to a known relay, reconnects


class Handshake(BaseModel):
    """One-time greeting the relay sends to a new connection"""

    model_config = ConfigDict(frozen=True)

    type: Literal["CONNECTED"] = HANDSHAKE_TYPE
    message: str


class SessionLoad(BaseModel):
    """Announces which item every endpoint should have loaded"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["LOAD_VIDEO"] = SESSION_LOAD_TYPE
    item_id: str = Field(..., alias="videoId", min_length=1)
    timestamp: Optional[float] = None


class PlaybackEvent(BaseModel):
    """Play, pause or seek at a position (seconds)"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action: PlaybackAction
    position: float = Field(..., alias="time", ge=0, allow_inf_nan=False)
    timestamp: Optional[float] = Field(None, allow_inf_nan=False)


def _message_kind(value: Any) -> Optional[str]:
    # Playback frames carry no "type" key, only "action"
    if isinstance(value, dict):
        if "type" in value:
            return value["type"]
        if "action" in value:
            return "PLAYBACK"
        return None
    if isinstance(value, PlaybackEvent):
        return "PLAYBACK"
    return getattr(value, "type", None)


SyncMessage = Annotated[
    Union[
        Annotated[Handshake, Tag(HANDSHAKE_TYPE)],
        Annotated[SessionLoad, Tag(SESSION_LOAD_TYPE)],
        Annotated[PlaybackEvent, Tag("PLAYBACK")],
    ],
    Discriminator(_message_kind),
]

SyncEvent = Union[SessionLoad, PlaybackEvent]

_message_adapter = TypeAdapter(SyncMessage)


def now_ms() -> float:
    """Wall-clock time in milliseconds since the epoch"""
    return time.time() * 1000


def parse_message(raw: Union[str, bytes]) -> Union[Handshake, SessionLoad, PlaybackEvent]:
    """Validate a raw frame into one of the wire messages.

    Raises ProtocolError when the frame is not JSON or matches no known shape.
    """
    try:
        return _message_adapter.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(
            f"Invalid sync message: {e.error_count()} error(s)",
            {"errors": [err["type"] for err in e.errors()]},
        ) from e


def encode_message(message: BaseModel) -> str:
    """Serialize a wire message to its JSON text frame"""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def stamp(event: SyncEvent, timestamp: Optional[float] = None) -> SyncEvent:
    """Return a copy of the event carrying the given (or current) timestamp"""
    return event.model_copy(
        update={"timestamp": now_ms() if timestamp is None else timestamp}
    )
