from typing import Optional

from loguru import logger

from ..errors import BackendNotReadyError
from ..models import PlaybackAction
from .backend import PlaybackBackend, PlayerState
from .engine import ReconciliationEngine


class SessionController:
    """Tracks which item is loaded and whether it is playing.

    User requests hit the local backend first and are then sent to the relay
    when connected. Remote loads and applied remote actions arrive through the
    engine, which holds this controller as its listener.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        backend: Optional[PlaybackBackend] = None,
    ):
        self.engine = engine
        self.backend = backend or engine.backend
        self.item_id: Optional[str] = None
        self._is_playing = False
        self._pending_item: Optional[str] = None

        engine.attach(self)
        self.backend.on_state_change(self._on_backend_state)

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    def snapshot(self) -> dict:
        return {
            "item_id": self.item_id,
            "is_playing": self._is_playing,
            "status": self.engine.status.value,
            "role": self.engine.role.value,
        }

    def load(self, item_id: str):
        """Load an item locally and share it with the session"""
        if not item_id:
            raise ValueError("item_id must not be empty")
        self.item_id = item_id
        self._set_playing(False)
        self._load_backend(item_id)
        if self.engine.is_connected:
            self.engine.send_session_load(item_id)

    def play(self) -> bool:
        return self._local_action(PlaybackAction.PLAY)

    def pause(self) -> bool:
        return self._local_action(PlaybackAction.PAUSE)

    def seek(self, position: float) -> bool:
        return self._local_action(PlaybackAction.SEEK, position)

    def backend_ready(self):
        """Load whatever arrived while the backend was still initializing"""
        if self._pending_item:
            logger.info(f"Loading item on ready: {self._pending_item}")
            self._load_backend(self._pending_item)

    # SyncListener

    def handle_remote_load(self, item_id: str):
        logger.info(f"Received item sync, loading: {item_id}")
        self.item_id = item_id
        self._set_playing(False)
        self._load_backend(item_id)

    def handle_remote_playback(self, action: PlaybackAction):
        if action is PlaybackAction.PLAY:
            self._set_playing(True)
        elif action is PlaybackAction.PAUSE:
            self._set_playing(False)

    def _local_action(self, action: PlaybackAction, position: Optional[float] = None) -> bool:
        if not self.backend.is_ready:
            logger.warning(f"Cannot {action.value.lower()}: player not ready")
            return False

        try:
            if action is PlaybackAction.SEEK:
                self.backend.seek(position)
            else:
                position = self.backend.get_current_position()
                # flag first so the backend's own notification is not re-sent
                self._set_playing(action is PlaybackAction.PLAY)
                if action is PlaybackAction.PLAY:
                    self.backend.play()
                else:
                    self.backend.pause()
        except BackendNotReadyError as e:
            logger.warning(f"Cannot {action.value.lower()}: {e}")
            return False

        logger.info(f"{action.value} at {position:.3f}")
        self._emit(action, position)
        return True

    def _on_backend_state(self, state: PlayerState):
        if state not in (PlayerState.PLAYING, PlayerState.PAUSED):
            return
        if self.engine.is_applying_remote:
            logger.debug(f"Ignoring {state.name} notification (syncing)")
            return

        playing = state == PlayerState.PLAYING
        if playing == self._is_playing:
            return
        self._set_playing(playing)
        action = PlaybackAction.PLAY if playing else PlaybackAction.PAUSE
        self._emit(action, self.backend.get_current_position())

    def _emit(self, action: PlaybackAction, position: float):
        if self.engine.is_connected:
            self.engine.send_playback(action, position)
        else:
            logger.debug(f"Not sending {action.value}: not connected")

    def _set_playing(self, playing: bool):
        self._is_playing = playing
        self.engine.set_playing(playing)

    def _load_backend(self, item_id: str):
        try:
            self.backend.load(item_id)
            self._pending_item = None
        except BackendNotReadyError:
            self._pending_item = item_id
            logger.warning(f"Player not ready yet, {item_id} will load when ready")
