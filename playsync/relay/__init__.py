from .registry import Connection, ConnectionRegistry, TransportState
from .server import RelayServer

__all__ = ["Connection", "ConnectionRegistry", "TransportState", "RelayServer"]
