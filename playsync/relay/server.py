"""
Relay server for PlaySync
"""

from typing import Any, Callable, Optional

from loguru import logger

from ..errors import ProtocolError
from ..models import (
    Handshake,
    PlaybackEvent,
    SessionLoad,
    SyncEvent,
    encode_message,
    now_ms,
    parse_message,
    stamp,
)
from .registry import Connection, ConnectionRegistry, TransportState


class RelayServer:
    """Broadcasts sync events from one endpoint to every other open endpoint.

    The relay keeps no session state: it only knows which connections are
    open. Everything runs on a single event loop and broadcast never awaits,
    so one inbound message is fully fanned out before the next is handled.
    """

    HANDSHAKE_MESSAGE = "Connected to PlaySync relay"

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self._clock = clock

    def register(self, transport: Any, remote: Optional[str] = None) -> Connection:
        """Track a freshly accepted transport and greet it"""
        connection = Connection(transport=transport, remote=remote)
        self.registry.add(connection)
        connection.send(encode_message(Handshake(message=self.HANDSHAKE_MESSAGE)))
        logger.info(
            f"Client connected from {connection.label} ({len(self.registry)} total)"
        )
        return connection

    def unregister(self, connection: Connection):
        """Forget a closed or failed connection"""
        connection.state = TransportState.CLOSED
        if self.registry.remove(connection):
            logger.info(
                f"Client disconnected from {connection.label} "
                f"({len(self.registry)} remaining)"
            )

    def handle_message(self, connection: Connection, raw) -> int:
        """Validate an inbound frame and broadcast it; returns peers reached"""
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping message from {connection.label}: {e}")
            return 0

        if isinstance(message, SessionLoad):
            logger.info(f"Broadcasting item {message.item_id}")
        elif isinstance(message, PlaybackEvent):
            logger.info(
                f"Broadcasting {message.action.value} at time {message.position}"
            )
        else:
            logger.debug(f"Ignoring {message.type} message from {connection.label}")
            return 0

        return self.broadcast(connection, stamp(message, self._clock()))

    def broadcast(self, sender: Optional[Connection], event: SyncEvent) -> int:
        """Queue the event on every open connection except the sender"""
        text = encode_message(event)
        count = 0
        for peer in self.registry.peers(exclude=sender):
            if peer.send(text):
                count += 1
        logger.debug(f"Broadcasted to {count} client(s) of {len(self.registry)}")
        return count

    def status(self) -> dict:
        return {
            "connections": [c.to_dict() for c in self.registry],
            "open": len(self.registry.peers()),
        }
