"""Endpoint reconciliation engine.

Owns one endpoint's connection to the relay and reconciles remote sync events
against the local playback backend:

- latency compensation using the relay's broadcast timestamp
- seek thresholding so small discrepancies are tolerated
- echo suppression at the transport and backend layers
- periodic drift correction while the driving endpoint is playing
- delayed reconnects for endpoints that dial out
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed
from loguru import logger

from ..errors import BackendNotReadyError, ProtocolError, SyncConnectionError
from ..models import (
    EndpointRole,
    Handshake,
    PlaybackAction,
    PlaybackEvent,
    SessionLoad,
    encode_message,
    now_ms,
    parse_message,
)
from ..settings import DRIFT_INTERVAL, RECONNECT_DELAY
from .backend import PlaybackBackend, PlayerState

# Tuned to outlast backend state-change latency, well under a round trip
ECHO_SUPPRESSION_WINDOW = 0.1
APPLY_SUPPRESSION_WINDOW = 0.15

PLAY_PAUSE_THRESHOLD = 0.1
SEEK_THRESHOLD = 0.4


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SyncListener(Protocol):
    def handle_remote_load(self, item_id: str) -> None: ...

    def handle_remote_playback(self, action: PlaybackAction) -> None: ...


class SuppressionFlag:
    """Boolean that switches itself off a fixed time after being engaged"""

    def __init__(self, name: str, window: float):
        self.name = name
        self.window = window
        self._active = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._active

    def engage(self):
        if self._handle is not None:
            self._handle.cancel()
        self._active = True
        self._handle = asyncio.get_running_loop().call_later(self.window, self._decay)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._active = False

    def _decay(self):
        self._handle = None
        self._active = False


@dataclass
class ReconciliationState:
    receiving: SuppressionFlag
    applying: SuppressionFlag
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    is_playing: bool = False
    drift_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    reconnect_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


@dataclass(frozen=True)
class ApplyResult:
    action: PlaybackAction
    compensated: float
    current: float
    difference: float
    seeked: bool


def compensate_position(
    position: float, relay_timestamp: Optional[float], now: float
) -> float:
    """Shift a remote position by the relay-to-here transit time.

    Only the relay->receiver leg is estimated; the sender->relay leg is not
    known to the receiver and stays uncorrected.
    """
    if not relay_timestamp:
        return position
    return position + (now - relay_timestamp) / 1000


def seek_threshold(action: Union[PlaybackAction, str]) -> float:
    if PlaybackAction(action) is PlaybackAction.SEEK:
        return SEEK_THRESHOLD
    return PLAY_PAUSE_THRESHOLD


async def open_websocket(url: str):
    """Dial the relay"""
    return await websockets.connect(url, ping_interval=30, ping_timeout=10)


class ReconciliationEngine:
    """Keeps one endpoint's player in step with the rest of the session."""

    def __init__(
        self,
        backend: PlaybackBackend,
        url: str,
        role: Union[EndpointRole, str] = EndpointRole.CLIENT,
        listener: Optional[SyncListener] = None,
        connector: Callable[[str], Awaitable[Any]] = open_websocket,
        clock: Callable[[], float] = now_ms,
        reconnect_delay: float = RECONNECT_DELAY,
        drift_interval: float = DRIFT_INTERVAL,
        echo_window: float = ECHO_SUPPRESSION_WINDOW,
        apply_window: float = APPLY_SUPPRESSION_WINDOW,
        on_status_change: Optional[Callable[[ConnectionStatus], None]] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            backend: Local player the engine drives
            url: Relay WebSocket URL
            role: HOST drives drift correction, CLIENT reconnects on close
            listener: Receives remote loads and applied playback actions
            connector: Coroutine function opening the transport for a URL
            clock: Wall clock in milliseconds, comparable to the relay's
            reconnect_delay: Seconds before the single reconnect attempt
            drift_interval: Seconds between drift-correction SEEKs
            echo_window: Seconds outbound actions are dropped after a receive
            apply_window: Seconds backend notifications count as remote
            on_status_change: Callback when the connection status changes
        """
        self.backend = backend
        self.url = url
        self._role = EndpointRole(role)
        self._listener = listener
        self._connector = connector
        self._clock = clock
        self._reconnect_delay = reconnect_delay
        self._drift_interval = drift_interval
        self._on_status_change = on_status_change

        self.state = ReconciliationState(
            receiving=SuppressionFlag("receive", echo_window),
            applying=SuppressionFlag("apply", apply_window),
        )
        self.last_error: Optional[SyncConnectionError] = None

        self._transport: Any = None
        self._outbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._manual_close = False
        self._retrying = False

    @property
    def status(self) -> ConnectionStatus:
        return self.state.status

    @property
    def role(self) -> EndpointRole:
        return self._role

    @property
    def is_connected(self) -> bool:
        return self.state.status is ConnectionStatus.CONNECTED

    @property
    def is_applying_remote(self) -> bool:
        """True while backend notifications are attributed to a remote apply"""
        return self.state.applying.active

    @property
    def is_suppressing_echo(self) -> bool:
        return self.state.receiving.active

    @property
    def is_playing(self) -> bool:
        return self.state.is_playing

    @property
    def reconnect_pending(self) -> bool:
        return self.state.reconnect_handle is not None

    @property
    def drift_active(self) -> bool:
        return self.state.drift_handle is not None

    def attach(self, listener: SyncListener) -> None:
        self._listener = listener

    # -- connection lifecycle -------------------------------------------

    def connect(self) -> None:
        """Start dialing the relay; returns immediately"""
        if self.state.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            logger.debug(f"Already {self.state.status.value}, ignoring connect()")
            return

        self._cancel_reconnect()
        self._manual_close = False
        self._retrying = False
        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTING)
        logger.info(f"Connecting to {self.url}...")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection on purpose; no reconnect follows"""
        self._manual_close = True
        self._cancel_reconnect()
        self._stop_drift()

        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport: {e}")

        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None

        self._release_transport()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def close(self) -> None:
        """Tear the engine down, cancelling every timer it owns"""
        await self.disconnect()
        self.state.receiving.cancel()
        self.state.applying.cancel()
        self._listener = None

    def set_role(self, role: Union[EndpointRole, str]) -> None:
        role = EndpointRole(role)
        if role is self._role:
            return
        logger.info(f"Role changed: {self._role.value} -> {role.value}")
        self._role = role
        self._stop_drift()
        if role is not EndpointRole.CLIENT:
            self._cancel_reconnect()
        self._update_drift()

    def set_playing(self, playing: bool) -> None:
        self.state.is_playing = playing
        self._update_drift()

    async def _run(self) -> None:
        try:
            transport = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = SyncConnectionError(
                f"Failed to connect to {self.url}: {e}", {"url": self.url}
            )
            logger.error(f"Connection error: {e}")
            self._set_status(ConnectionStatus.ERROR)
            if self._retrying and not self._manual_close and self._role is EndpointRole.CLIENT:
                self._schedule_reconnect()
            return

        self._retrying = False
        self._transport = transport
        self._outbox = asyncio.Queue()
        self._writer = asyncio.create_task(self._pump(transport, self._outbox))
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("WebSocket connected")

        failed = False
        try:
            async for raw in transport:
                try:
                    self._handle_raw(raw)
                except Exception as e:
                    logger.warning(f"Error handling message: {e}")
        except ConnectionClosed as e:
            logger.warning(f"Connection closed: {e}")
        except Exception as e:
            self.last_error = SyncConnectionError(str(e), {"url": self.url})
            logger.error(f"WebSocket error: {e}")
            failed = True
        finally:
            self._release_transport()

        if failed:
            self._set_status(ConnectionStatus.ERROR)
        else:
            self._handle_close()

    def _handle_close(self) -> None:
        logger.info("WebSocket disconnected")
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self._manual_close or self._role is not EndpointRole.CLIENT:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        logger.info(f"Reconnecting in {self._reconnect_delay:.1f} seconds...")
        self.state.reconnect_handle = asyncio.get_running_loop().call_later(
            self._reconnect_delay, self._reconnect
        )

    def _reconnect(self) -> None:
        self.state.reconnect_handle = None
        logger.info("Attempting to reconnect...")
        self.connect()
        self._retrying = True

    def _cancel_reconnect(self) -> None:
        if self.state.reconnect_handle is not None:
            self.state.reconnect_handle.cancel()
            self.state.reconnect_handle = None

    def _release_transport(self) -> None:
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        self._transport = None
        self._outbox = None

    async def _pump(self, transport: Any, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            try:
                await transport.send(text)
            except ConnectionClosed as e:
                logger.warning(f"Send failed, connection closed: {e}")
                return
            except Exception as e:
                logger.error(f"Send failed: {e}")
                return

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.state.status:
            return
        self.state.status = status
        logger.info(f"Sync status: {status.value}")
        self._update_drift()
        if self._on_status_change:
            try:
                self._on_status_change(status)
            except Exception as e:
                logger.warning(f"Status callback error: {e}")

    # -- outbound --------------------------------------------------------

    def send_playback(self, action: Union[PlaybackAction, str], position: float) -> bool:
        """Send a locally originated playback action to the relay"""
        if self.state.receiving.active:
            logger.debug("Not sending event: currently applying remote change")
            return False
        event = PlaybackEvent(
            action=PlaybackAction(action),
            position=max(0.0, position),
            timestamp=self._clock(),
        )
        if self._send(event):
            logger.debug(
                f"Sent sync event: {event.action.value} at {event.position:.3f} "
                f"(role: {self._role.value})"
            )
            return True
        return False

    def send_session_load(self, item_id: str) -> bool:
        if self._send(SessionLoad(item_id=item_id, timestamp=self._clock())):
            logger.info(f"Sent item {item_id}")
            return True
        return False

    def _send(self, message) -> bool:
        if self.state.status is not ConnectionStatus.CONNECTED or self._outbox is None:
            logger.warning("Cannot send sync event: WebSocket not open")
            return False
        self._outbox.put_nowait(encode_message(message))
        return True

    # -- inbound ---------------------------------------------------------

    def _handle_raw(self, raw) -> None:
        try:
            message = parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed message: {e}")
            return

        if isinstance(message, Handshake):
            logger.info(message.message)
        elif isinstance(message, SessionLoad):
            logger.info(f"Received item {message.item_id}")
            if self._listener is None:
                logger.warning("No listener attached, dropping item load")
                return
            self._listener.handle_remote_load(message.item_id)
        elif isinstance(message, PlaybackEvent):
            self.state.receiving.engage()
            self.apply_remote(message)

    def apply_remote(
        self, event: PlaybackEvent, now: Optional[float] = None
    ) -> Optional[ApplyResult]:
        """Bring the local backend in line with a remote playback action"""
        if not self.backend.is_ready:
            logger.warning("Cannot sync: player not ready")
            return None

        self.state.applying.engage()
        if now is None:
            now = self._clock()
        compensated = compensate_position(event.position, event.timestamp, now)

        try:
            current = self.backend.get_current_position()
            difference = abs(compensated - current)
            seeked = difference > seek_threshold(event.action)
            if seeked:
                self.backend.seek(compensated)

            if event.action is PlaybackAction.PLAY:
                self.backend.play()
            elif event.action is PlaybackAction.PAUSE:
                self.backend.pause()
        except BackendNotReadyError as e:
            logger.warning(f"Cannot sync: {e}")
            self.state.applying.cancel()
            return None

        logger.debug(
            f"Synced {event.action.value} at {compensated:.3f}s "
            f"(diff: {difference:.3f}s, seek: {seeked})"
        )
        if self._listener is not None:
            self._listener.handle_remote_playback(event.action)

        return ApplyResult(
            action=event.action,
            compensated=compensated,
            current=current,
            difference=difference,
            seeked=seeked,
        )

    # -- drift correction ------------------------------------------------

    def _should_drift(self) -> bool:
        return (
            self._role is EndpointRole.HOST
            and self.state.status is ConnectionStatus.CONNECTED
            and self.state.is_playing
        )

    def _update_drift(self) -> None:
        if not self._should_drift():
            self._stop_drift()
        elif self.state.drift_handle is None:
            self.state.drift_handle = asyncio.get_running_loop().call_later(
                self._drift_interval, self._drift_tick
            )

    def _stop_drift(self) -> None:
        if self.state.drift_handle is not None:
            self.state.drift_handle.cancel()
            self.state.drift_handle = None

    def _drift_tick(self) -> None:
        self.state.drift_handle = None
        if not self._should_drift():
            return
        self.state.drift_handle = asyncio.get_running_loop().call_later(
            self._drift_interval, self._drift_tick
        )

        try:
            self.backend.ensure_ready()
            if self.backend.get_state() != PlayerState.PLAYING:
                return
            position = self.backend.get_current_position()
        except BackendNotReadyError as e:
            logger.warning(f"Skipping drift correction: {e}")
            return

        self.send_playback(PlaybackAction.SEEK, position)
