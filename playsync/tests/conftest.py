"""
Shared fixtures for the PlaySync test suite.
"""

import asyncio
import json

import pytest

from ..endpoint import VirtualBackend


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingBackend(VirtualBackend):
    """VirtualBackend that remembers every seek it was asked to do"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.seeks = []

    def seek(self, position: float) -> None:
        self.seeks.append(position)
        super().seek(position)


class FakeTransport:
    """Client transport double: async-iterable inbound, recorded outbound"""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    def push(self, message):
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self):
        self.incoming.put_nowait(None)

    async def send(self, text: str):
        self.sent.append(json.loads(text))

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Stands in for the WebSocket dialer"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self.transports = []

    async def __call__(self, url: str):
        self.calls += 1
        if self.fail:
            raise OSError("Connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


async def settle(delay: float = 0.01):
    """Let pending tasks and callbacks run"""
    await asyncio.sleep(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return RecordingBackend(clock=clock)


@pytest.fixture
def connector():
    return FakeConnector()
