import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from loguru import logger


class TransportState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """Relay-side handle for one live endpoint transport"""

    transport: Any  # anything with an async send_text(str)
    remote: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    state: TransportState = TransportState.OPEN
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)

    @property
    def is_open(self) -> bool:
        return self.state is TransportState.OPEN

    def send(self, text: str) -> bool:
        """Queue a frame for delivery without waiting on the transport"""
        if not self.is_open:
            return False
        self.outbox.put_nowait(text)
        return True

    async def pump(self):
        """Deliver queued frames in order until the transport fails"""
        while True:
            text = await self.outbox.get()
            if not self.is_open:
                return
            try:
                await self.transport.send_text(text)
            except Exception as e:
                logger.warning(f"Send to {self.label} failed: {e}")
                self.state = TransportState.CLOSED
                return

    @property
    def label(self) -> str:
        return self.remote or self.id[:8]

    def to_dict(self) -> dict:
        """Convert connection to dictionary for API responses"""
        return {
            "id": self.id,
            "remote": self.remote,
            "state": self.state.value,
            "pending": self.outbox.qsize(),
        }


class ConnectionRegistry:
    """Tracks the currently open endpoint connections of one relay"""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def add(self, connection: Connection):
        self._connections[connection.id] = connection

    def remove(self, connection: Connection) -> bool:
        return self._connections.pop(connection.id, None) is not None

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def peers(self, exclude: Optional[Connection] = None) -> List[Connection]:
        """Open connections other than `exclude`, in registration order"""
        return [
            c for c in self._connections.values() if c is not exclude and c.is_open
        ]

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def __contains__(self, connection: Connection) -> bool:
        return connection.id in self._connections
