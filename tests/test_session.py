import asyncio
import logging

import numpy as np
import pytest

from conftest import FakeCamera, FakeConnector, FakeLink, FakeMicrophone, Rig, settle
from morphcloud.control import ControlChannel
from morphcloud.devices import DeviceAcquisitionError
from morphcloud.live import TransportError
from morphcloud.session import (
    PeriodicTimer,
    SessionActiveError,
    SessionState,
    StreamingSession,
)
from morphcloud.shapes import ShapeDescriptor


def run(coro):
    return asyncio.run(asyncio.wait_for(coro, timeout=5))


def assert_released_once(rig):
    assert rig.camera.n_releases == 1
    assert rig.microphone.n_stops == 1
    assert rig.microphone.n_closes == 1
    assert rig.link.n_closes == 1


# -------------------------------------------------------------------------------
# Connecting
# -------------------------------------------------------------------------------


def test_connect_opens_devices_and_streams():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        assert rig.session.state is SessionState.OPEN
        assert rig.session.is_live and rig.session.is_connected
        assert rig.states == [SessionState.CONNECTING, SessionState.OPEN]
        assert rig.camera.n_opens == 1
        assert rig.microphone.n_opens == 1
        assert rig.microphone.n_starts == 1
        await settle()
        # the first video tick goes out right away
        assert len(rig.link.video) == 1
        await rig.session.disconnect()

    run(scenario())


def test_connect_twice_is_rejected():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        with pytest.raises(SessionActiveError):
            await rig.session.connect()
        assert rig.connector.n_opens == 1
        await rig.session.disconnect()

    run(scenario())


def test_only_one_session_per_process():
    async def scenario():
        first, second = Rig(), Rig()
        await first.session.connect()
        with pytest.raises(SessionActiveError):
            await second.session.connect()
        assert second.camera.n_opens == 0
        await first.session.disconnect()
        # once the first is idle, the second can go
        await second.session.connect()
        assert second.session.state is SessionState.OPEN
        await second.session.disconnect()

    run(scenario())


def test_device_failure_leaves_the_session_idle():
    async def scenario():
        rig = Rig(camera=FakeCamera(fail_open=True))
        with pytest.raises(DeviceAcquisitionError):
            await rig.session.connect()
        assert rig.session.state is SessionState.IDLE
        assert rig.states == []
        assert rig.connector.n_opens == 0
        # the microphone was already acquired, and is released
        assert rig.microphone.n_closes == 1
        assert StreamingSession._active_session is None

    run(scenario())


def test_connector_failure_releases_devices_and_raises():
    async def scenario():
        rig = Rig(connector=FakeConnector(error=TransportError("refused")))
        with pytest.raises(TransportError):
            await rig.session.connect()
        assert rig.session.state is SessionState.IDLE
        assert rig.states == [
            SessionState.CONNECTING,
            SessionState.CLOSING,
            SessionState.IDLE,
        ]
        assert rig.camera.n_releases == 1
        assert rig.microphone.n_closes == 1
        assert rig.microphone.n_starts == 0

    run(scenario())


def test_disconnect_while_connecting_cancels_connect():
    async def scenario():
        rig = Rig(connector=FakeConnector(hang=True))
        connecting = asyncio.create_task(rig.session.connect())
        await settle()
        assert rig.session.state is SessionState.CONNECTING

        await rig.session.disconnect()

        with pytest.raises(asyncio.CancelledError):
            await connecting
        assert rig.session.state is SessionState.IDLE
        assert rig.camera.n_releases == 1
        assert rig.microphone.n_closes == 1

    run(scenario())


def test_invalid_range_policy():
    with pytest.raises(ValueError):
        StreamingSession(
            ControlChannel(),
            connector=FakeConnector(),
            camera=FakeCamera(),
            microphone=FakeMicrophone(),
            range_policy='wrap',
        )


# -------------------------------------------------------------------------------
# Inbound function calls
# -------------------------------------------------------------------------------


def test_control_call_is_published_and_acknowledged():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.push('call-7', expansion=0.25, tension=0.5, shape='saturn')
        await settle()

        state = rig.channel.read()
        assert (state.expansion, state.tension) == (0.25, 0.5)
        assert state.shape is ShapeDescriptor.SATURN
        assert [call.id for call in rig.link.acks] == ['call-7']
        assert rig.session.n_accepted == 1
        await rig.session.disconnect()

    run(scenario())


def test_malformed_call_is_dropped_but_acknowledged():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        before = rig.channel.read()
        rig.link.push('bad', expansion=0.5)
        rig.link.push('out-of-range', expansion=1.5, tension=0.5)
        rig.link.push('good', expansion=0.1, tension=0.2)
        await settle()

        assert [call.id for call in rig.link.acks] == ['bad', 'out-of-range', 'good']
        assert rig.session.n_dropped == 2
        assert rig.channel.n_updates == 1
        assert rig.channel.read().expansion == 0.1
        assert rig.channel.read().shape is before.shape
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    run(scenario())


def test_clamp_policy_publishes_out_of_range_values():
    async def scenario():
        rig = Rig(range_policy='clamp')
        await rig.session.connect()
        rig.link.push(expansion=1.5, tension=-0.5)
        await settle()
        state = rig.channel.read()
        assert (state.expansion, state.tension) == (1.0, 0.0)
        await rig.session.disconnect()

    run(scenario())


def test_shape_that_is_not_a_name_is_published_as_the_sphere():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.push('c1', expansion=0.3, tension=0.4, shape=7)
        await settle()

        state = rig.channel.read()
        assert (state.expansion, state.tension) == (0.3, 0.4)
        assert state.shape is ShapeDescriptor.SPHERE
        assert rig.channel.n_updates == 1
        assert [call.id for call in rig.link.acks] == ['c1']
        await rig.session.disconnect()

    run(scenario())


def test_calls_to_other_functions_are_ignored():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.push('other', name='setVolume', level=3)
        await settle()
        assert rig.link.acks == []
        assert rig.channel.n_updates == 0
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    run(scenario())


def test_failed_acknowledgement_does_not_close_the_session():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.fail_ack = True
        rig.link.push(expansion=0.3, tension=0.3)
        await settle()
        assert rig.channel.read().expansion == 0.3
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    run(scenario())


# -------------------------------------------------------------------------------
# Outbound media
# -------------------------------------------------------------------------------


def test_audio_blocks_go_out_in_order():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        values = [0.1, 0.2, 0.3, 0.4]
        for value in values:
            rig.microphone.emit(np.full((160, 1), value))
        await settle(50)

        chunks = rig.link.audio
        assert len(chunks) == len(values)
        firsts = [np.frombuffer(chunk.data, dtype='<i2')[0] for chunk in chunks]
        assert firsts == [int(value * 32767) for value in values]
        await rig.session.disconnect()

    run(scenario())


def test_audio_is_resampled_to_16k():
    async def scenario():
        rig = Rig(microphone=FakeMicrophone(samplerate=48000))
        await rig.session.connect()
        rig.microphone.emit(np.zeros((4800, 2)))
        await settle()
        (chunk,) = rig.link.audio
        assert chunk.mime_type == 'audio/pcm;rate=16000'
        assert len(chunk.data) == 1600 * 2
        await rig.session.disconnect()

    run(scenario())


def test_video_frames_are_sent_periodically():
    async def scenario():
        rig = Rig(video_fps=50)
        await rig.session.connect()
        await asyncio.sleep(0.2)
        assert len(rig.link.video) >= 3
        assert rig.camera.captures[0] == (0.5, 0.6)
        await rig.session.disconnect()

    run(scenario())


def test_video_tick_without_frame_is_skipped():
    async def scenario():
        rig = Rig(camera=FakeCamera(has_frame=False), video_fps=50)
        await rig.session.connect()
        await asyncio.sleep(0.1)
        assert rig.camera.captures
        assert rig.link.video == []
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    run(scenario())


def test_failing_camera_is_logged_and_the_timer_keeps_going(caplog):
    class BrokenCamera(FakeCamera):
        def capture_jpeg(self, *, scale, quality):
            super().capture_jpeg(scale=scale, quality=quality)
            raise ValueError("bad frame")

    async def scenario():
        rig = Rig(camera=BrokenCamera(), video_fps=50)
        await rig.session.connect()
        await asyncio.sleep(0.2)
        assert len(rig.camera.captures) >= 3
        assert rig.link.video == []
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    with caplog.at_level(logging.ERROR, logger='morphcloud.session'):
        run(scenario())
    assert any(record.exc_info for record in caplog.records)


def test_bad_audio_block_is_dropped_and_the_next_one_sent(caplog):
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.microphone.emit(0.5)  # no channel axis, can't be downmixed
        rig.microphone.emit(np.full((160, 1), 0.2))
        await settle(50)

        (chunk,) = rig.link.audio
        assert np.frombuffer(chunk.data, dtype='<i2')[0] == int(0.2 * 32767)
        assert rig.session.state is SessionState.OPEN
        await rig.session.disconnect()

    with caplog.at_level(logging.ERROR, logger='morphcloud.session'):
        run(scenario())
    assert any(record.exc_info for record in caplog.records)


def test_nothing_is_sent_after_disconnect():
    async def scenario():
        rig = Rig(video_fps=50)
        await rig.session.connect()
        await settle()
        await rig.session.disconnect()
        n_sent = len(rig.link.sent)

        rig.microphone.emit(np.zeros((160, 1)))
        await asyncio.sleep(0.1)
        assert len(rig.link.sent) == n_sent

    run(scenario())


# -------------------------------------------------------------------------------
# Teardown
# -------------------------------------------------------------------------------


def test_disconnect_releases_everything_once():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        await rig.session.disconnect()
        await rig.session.disconnect()

        assert rig.session.state is SessionState.IDLE
        assert rig.states[-2:] == [SessionState.CLOSING, SessionState.IDLE]
        assert_released_once(rig)
        assert StreamingSession._active_session is None

    run(scenario())


def test_concurrent_closes_release_everything_once():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.remote_close()
        await asyncio.gather(rig.session.disconnect(), rig.session.disconnect())
        await settle()

        assert rig.session.state is SessionState.IDLE
        assert rig.states.count(SessionState.IDLE) == 1
        assert_released_once(rig)

    run(scenario())


def test_disconnect_before_connect_is_a_no_op():
    async def scenario():
        rig = Rig()
        await rig.session.disconnect()
        assert rig.session.state is SessionState.IDLE
        assert rig.states == []

    run(scenario())


def test_remote_close_tears_the_session_down():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.remote_close()
        await rig.session.wait_closed()

        assert rig.session.state is SessionState.IDLE
        assert rig.session.error is None
        assert_released_once(rig)

    run(scenario())


def test_receive_error_closes_with_the_error():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        rig.link.remote_error()
        with pytest.raises(TransportError):
            await rig.session.wait_closed()
        assert rig.session.state is SessionState.IDLE
        assert_released_once(rig)

    run(scenario())


def test_send_error_closes_the_session():
    async def scenario():
        rig = Rig()
        rig.link.fail_send = True
        await rig.session.connect()
        with pytest.raises(TransportError):
            await rig.session.wait_closed()
        assert rig.session.state is SessionState.IDLE
        assert rig.camera.n_releases == 1

    run(scenario())


def test_session_can_reconnect_after_closing():
    async def scenario():
        rig = Rig()
        await rig.session.connect()
        await rig.session.disconnect()
        rig.connector.link = rig.link = type(rig.link)()
        await rig.session.connect()
        assert rig.session.state is SessionState.OPEN
        assert rig.camera.n_opens == 2
        await rig.session.disconnect()
        assert rig.camera.n_releases == 2

    run(scenario())


def test_failed_release_does_not_stop_teardown():
    class BrokenMicrophone(FakeMicrophone):
        def stop(self):
            super().stop()
            raise OSError("device gone")

    async def scenario():
        rig = Rig(microphone=BrokenMicrophone())
        await rig.session.connect()
        await rig.session.disconnect()
        assert rig.session.state is SessionState.IDLE
        assert_released_once(rig)

    run(scenario())


def test_producer_crash_closes_the_session_with_its_error():
    class CrashingLink(FakeLink):
        async def send_media(self, chunk):
            raise RuntimeError("encoder bug")

    async def scenario():
        rig = Rig()
        rig.connector.link = rig.link = CrashingLink()
        await rig.session.connect()
        with pytest.raises(RuntimeError, match='encoder bug'):
            await rig.session.wait_closed()
        assert rig.session.state is SessionState.IDLE
        assert_released_once(rig)
        assert StreamingSession._active_session is None

    run(scenario())


# -------------------------------------------------------------------------------
# Timer
# -------------------------------------------------------------------------------


def test_periodic_timer_ticks_until_cancelled():
    async def scenario():
        ticks = []

        async def tick():
            ticks.append(asyncio.get_running_loop().time())

        timer = PeriodicTimer(0.01, tick)
        timer.start()
        await asyncio.sleep(0.1)
        task = timer.cancel()
        await asyncio.gather(task, return_exceptions=True)
        n_ticks = len(ticks)
        await asyncio.sleep(0.05)

        assert not timer.active
        assert n_ticks >= 5
        assert len(ticks) == n_ticks

    run(scenario())