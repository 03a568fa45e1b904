"""
Tests for the endpoint reconciliation engine.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from ..endpoint import (
    ConnectionStatus,
    EndpointRole,
    ReconciliationEngine,
    VirtualBackend,
    compensate_position,
    seek_threshold,
)
from ..errors import BackendNotReadyError, SyncConnectionError
from ..models import PlaybackAction, PlaybackEvent
from .conftest import FakeConnector, settle


def make_engine(backend, connector, **kwargs):
    kwargs.setdefault("clock", lambda: 0.0)
    return ReconciliationEngine(backend, "ws://relay.test:8080", connector=connector, **kwargs)


class TestPureHelpers:
    def test_compensation_adds_relay_transit(self):
        assert compensate_position(10.0, 1000.0, 1250.0) == pytest.approx(10.25)

    def test_no_timestamp_means_no_compensation(self):
        assert compensate_position(10.0, None, 99999.0) == 10.0

    def test_thresholds(self):
        assert seek_threshold(PlaybackAction.PLAY) == 0.1
        assert seek_threshold("PAUSE") == 0.1
        assert seek_threshold(PlaybackAction.SEEK) == 0.4


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_reaches_connected(self, backend, connector):
        statuses = []
        engine = make_engine(backend, connector, on_status_change=statuses.append)

        engine.connect()
        assert engine.status is ConnectionStatus.CONNECTING
        await settle()

        assert engine.status is ConnectionStatus.CONNECTED
        assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        await engine.close()
        assert engine.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_twice_dials_once(self, backend, connector):
        engine = make_engine(backend, connector)
        engine.connect()
        engine.connect()
        await settle()
        assert connector.calls == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_failed_dial_is_sticky_error(self, backend):
        connector = FakeConnector(fail=True)
        engine = make_engine(backend, connector, reconnect_delay=0.05)

        engine.connect()
        await settle(0.1)

        assert engine.status is ConnectionStatus.ERROR
        assert isinstance(engine.last_error, SyncConnectionError)
        assert connector.calls == 1
        assert not engine.reconnect_pending

        connector.fail = False
        engine.connect()
        await settle()
        assert engine.status is ConnectionStatus.CONNECTED
        await engine.close()

    @pytest.mark.asyncio
    async def test_client_reconnects_once_after_close(self, backend, connector):
        engine = make_engine(backend, connector, role=EndpointRole.CLIENT, reconnect_delay=0.05)
        engine.connect()
        await settle()

        connector.latest.drop()
        await settle()
        assert engine.status is ConnectionStatus.DISCONNECTED
        assert engine.reconnect_pending

        await settle(0.1)
        assert connector.calls == 2
        assert engine.status is ConnectionStatus.CONNECTED
        assert not engine.reconnect_pending
        await engine.close()

    @pytest.mark.asyncio
    async def test_client_keeps_retrying_until_relay_returns(self, backend, connector):
        engine = make_engine(backend, connector, role=EndpointRole.CLIENT, reconnect_delay=0.05)
        engine.connect()
        await settle()

        connector.fail = True
        connector.latest.drop()
        await settle(0.08)
        assert connector.calls == 2
        assert engine.status is ConnectionStatus.ERROR
        assert engine.reconnect_pending

        connector.fail = False
        await settle(0.1)
        assert connector.calls == 3
        assert engine.status is ConnectionStatus.CONNECTED
        assert not engine.reconnect_pending
        await engine.close()

    @pytest.mark.asyncio
    async def test_disconnect_stops_retry_chain(self, backend, connector):
        engine = make_engine(backend, connector, reconnect_delay=0.05)
        engine.connect()
        await settle()

        connector.fail = True
        connector.latest.drop()
        await settle(0.08)
        assert engine.reconnect_pending

        await engine.disconnect()
        await settle(0.1)
        assert connector.calls == 2
        assert not engine.reconnect_pending

    @pytest.mark.asyncio
    async def test_host_never_reconnects(self, backend, connector):
        engine = make_engine(backend, connector, role=EndpointRole.HOST, reconnect_delay=0.05)
        engine.connect()
        await settle()

        connector.latest.drop()
        await settle(0.1)

        assert engine.status is ConnectionStatus.DISCONNECTED
        assert connector.calls == 1
        assert not engine.reconnect_pending

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, backend, connector):
        engine = make_engine(backend, connector, reconnect_delay=0.05)
        engine.connect()
        await settle()
        connector.latest.drop()
        await settle()
        assert engine.reconnect_pending

        await engine.disconnect()
        await settle(0.1)

        assert not engine.reconnect_pending
        assert connector.calls == 1

    @pytest.mark.asyncio
    async def test_manual_disconnect_does_not_reconnect(self, backend, connector):
        engine = make_engine(backend, connector, reconnect_delay=0.05)
        engine.connect()
        await settle()

        await engine.disconnect()
        await settle(0.1)

        assert connector.latest.closed
        assert engine.status is ConnectionStatus.DISCONNECTED
        assert connector.calls == 1


class TestApplyRemote:
    @pytest.fixture
    def engine(self, backend):
        backend.load("abc")
        backend.seek(10.0)
        backend.seeks.clear()
        return make_engine(backend, FakeConnector())

    @pytest.mark.asyncio
    async def test_pause_within_threshold_does_not_seek(self, engine, backend):
        event = PlaybackEvent(action=PlaybackAction.PAUSE, position=10.0, timestamp=1000.0)

        result = engine.apply_remote(event, now=1050.0)

        assert result.compensated == pytest.approx(10.05)
        assert not result.seeked
        assert backend.seeks == []

    @pytest.mark.asyncio
    async def test_pause_beyond_threshold_seeks(self, engine, backend):
        event = PlaybackEvent(action=PlaybackAction.PAUSE, position=10.0, timestamp=1000.0)

        result = engine.apply_remote(event, now=1200.0)

        assert result.seeked
        assert backend.seeks == [pytest.approx(10.2)]
        assert backend.get_state().name == "PAUSED"

    @pytest.mark.asyncio
    async def test_seek_uses_wider_threshold(self, engine, backend):
        event = PlaybackEvent(action=PlaybackAction.SEEK, position=10.0, timestamp=1000.0)

        assert not engine.apply_remote(event, now=1300.0).seeked
        assert backend.seeks == []

        assert engine.apply_remote(event, now=1500.0).seeked
        assert backend.seeks == [pytest.approx(10.5)]

    @pytest.mark.asyncio
    async def test_play_starts_backend(self, engine, backend):
        event = PlaybackEvent(action=PlaybackAction.PLAY, position=10.0)

        engine.apply_remote(event)

        assert backend.get_state().name == "PLAYING"
        assert backend.seeks == []

    @pytest.mark.asyncio
    async def test_listener_told_about_applied_action(self, engine):
        listener = MagicMock()
        engine.attach(listener)

        engine.apply_remote(PlaybackEvent(action=PlaybackAction.PLAY, position=10.0))

        listener.handle_remote_playback.assert_called_once_with(PlaybackAction.PLAY)

    @pytest.mark.asyncio
    async def test_backend_not_ready_is_noop(self, connector):
        backend = VirtualBackend(ready=False)
        engine = make_engine(backend, connector)

        result = engine.apply_remote(PlaybackEvent(action=PlaybackAction.PLAY, position=1.0))

        assert result is None
        assert not engine.is_applying_remote
        assert backend.get_state().name == "UNSTARTED"

    @pytest.mark.asyncio
    async def test_backend_failing_mid_apply_releases_flag(self, engine, backend):
        listener = MagicMock()
        engine.attach(listener)

        with patch.object(
            backend, "get_current_position", side_effect=BackendNotReadyError("player gone")
        ):
            result = engine.apply_remote(PlaybackEvent(action=PlaybackAction.PLAY, position=10.0))

        assert result is None
        assert not engine.is_applying_remote
        listener.handle_remote_playback.assert_not_called()

    @pytest.mark.asyncio
    async def test_apply_flag_decays(self, engine):
        engine.apply_remote(PlaybackEvent(action=PlaybackAction.SEEK, position=10.0))
        assert engine.is_applying_remote
        await settle(0.2)
        assert not engine.is_applying_remote


class TestInbound:
    @pytest.mark.asyncio
    async def test_received_action_suppresses_outbound_echo(self, backend, connector):
        engine = make_engine(backend, connector)
        engine.connect()
        await settle()
        transport = connector.latest

        transport.push({"action": "PLAY", "time": 0.0, "timestamp": 0.0})
        await settle()
        assert engine.is_suppressing_echo
        assert not engine.send_playback(PlaybackAction.PAUSE, 1.0)

        await settle(0.15)
        assert not engine.is_suppressing_echo
        assert engine.send_playback(PlaybackAction.PAUSE, 1.0)
        await settle()
        assert transport.sent == [{"action": "PAUSE", "time": 1.0, "timestamp": 0.0}]
        await engine.close()

    @pytest.mark.asyncio
    async def test_remote_load_goes_to_listener(self, backend, connector):
        listener = MagicMock()
        engine = make_engine(backend, connector, listener=listener)
        engine.connect()
        await settle()

        connector.latest.push({"type": "CONNECTED", "message": "welcome"})
        connector.latest.push({"type": "LOAD_VIDEO", "videoId": "dQw4w9WgXcQ", "timestamp": 0})
        await settle()

        listener.handle_remote_load.assert_called_once_with("dQw4w9WgXcQ")
        listener.handle_remote_playback.assert_not_called()
        await engine.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_ignored(self, backend, connector):
        engine = make_engine(backend, connector)
        engine.connect()
        await settle()

        connector.latest.push("definitely not json")
        connector.latest.push({"action": "REWIND", "time": 3})
        await settle()

        assert engine.status is ConnectionStatus.CONNECTED
        assert backend.seeks == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_send_while_disconnected_is_dropped(self, backend, connector):
        engine = make_engine(backend, connector)
        assert not engine.send_playback(PlaybackAction.PLAY, 0.0)
        assert not engine.send_session_load("abc")


class TestDriftCorrection:
    @pytest.fixture
    def playing_backend(self, clock):
        backend = VirtualBackend(clock=clock)
        backend.load("abc")
        backend.seek(42.0)
        backend.play()
        return backend

    @pytest.mark.asyncio
    async def test_no_drift_while_paused_flag(self, playing_backend, connector):
        engine = make_engine(playing_backend, connector, role=EndpointRole.HOST, drift_interval=0.05)
        engine.connect()
        await settle()

        await settle(0.2)

        assert not engine.drift_active
        assert connector.latest.sent == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_one_seek_per_interval_while_playing(self, playing_backend, connector):
        engine = make_engine(playing_backend, connector, role=EndpointRole.HOST, drift_interval=0.2)
        engine.connect()
        await settle()

        engine.set_playing(True)
        await asyncio.sleep(0.3)

        assert connector.latest.sent == [{"action": "SEEK", "time": 42.0, "timestamp": 0.0}]
        await engine.close()

    @pytest.mark.asyncio
    async def test_drift_stops_on_pause_role_change_and_disconnect(self, playing_backend, connector):
        engine = make_engine(playing_backend, connector, role=EndpointRole.HOST)
        engine.connect()
        await settle()

        engine.set_playing(True)
        assert engine.drift_active
        engine.set_playing(False)
        assert not engine.drift_active

        engine.set_playing(True)
        engine.set_role(EndpointRole.CLIENT)
        assert not engine.drift_active

        engine.set_role(EndpointRole.HOST)
        assert engine.drift_active
        await engine.disconnect()
        assert not engine.drift_active

    @pytest.mark.asyncio
    async def test_client_role_never_drifts(self, playing_backend, connector):
        engine = make_engine(playing_backend, connector, role=EndpointRole.CLIENT)
        engine.connect()
        await settle()
        engine.set_playing(True)
        assert not engine.drift_active
        await engine.close()

    @pytest.mark.asyncio
    async def test_backend_not_ready_skips_tick(self, connector):
        engine = make_engine(VirtualBackend(ready=False), connector, role=EndpointRole.HOST, drift_interval=0.05)
        engine.connect()
        await settle()

        engine.set_playing(True)
        await settle(0.2)

        assert connector.latest.sent == []
        assert engine.drift_active
        await engine.close()
        assert not engine.drift_active
