"""Pytest configuration and shared fixtures."""

import asyncio

import numpy as np
import pytest

from morphcloud.control import ControlChannel
from morphcloud.devices import DeviceAcquisitionError
from morphcloud.live import FunctionCall, TransportError
from morphcloud.session import StreamingSession


@pytest.fixture(autouse=True)
def no_active_session():
    """Make sure a failed test doesn't leave a session claimed for the next ones."""
    StreamingSession._active_session = None
    yield
    StreamingSession._active_session = None


@pytest.fixture
def rng():
    return np.random.default_rng(42)


async def settle(n: int = 20):
    """Let the other tasks of the loop run for a while."""
    for _ in range(n):
        await asyncio.sleep(0)


# -------------------------------------------------------------------------------
# Fakes of the link and devices
# -------------------------------------------------------------------------------


class FakeLink:
    """Records what the session sends; inbound calls are pushed with ``push``."""

    def __init__(self):
        self.sent = []
        self.acks = []
        self.n_closes = 0
        self.fail_send = False
        self.fail_ack = False
        self._queue = None

    @property
    def _inbound(self):
        # Made on first use, from the loop the session runs in
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    @property
    def audio(self):
        return [c for c in self.sent if c.mime_type.startswith('audio/')]

    @property
    def video(self):
        return [c for c in self.sent if c.mime_type == 'image/jpeg']

    def push(self, call_id='call-1', name='updateParticleControl', **args):
        self._inbound.put_nowait(FunctionCall(id=call_id, name=name, args=args))

    def remote_close(self):
        self._inbound.put_nowait(None)

    def remote_error(self, error=None):
        self._inbound.put_nowait(error or TransportError("connection reset"))

    async def send_media(self, chunk):
        if self.fail_send:
            raise TransportError("send failed")
        self.sent.append(chunk)

    async def send_ack(self, call):
        if self.fail_ack:
            raise TransportError("ack failed")
        self.acks.append(call)

    async def calls(self):
        while True:
            item = await self._inbound.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.n_closes += 1


class FakeConnector:
    def __init__(self, link=None, *, error=None, hang=False):
        self.link = link
        self.error = error
        self.hang = hang
        self.n_opens = 0

    async def open(self):
        self.n_opens += 1
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()
        return self.link


class FakeCamera:
    def __init__(self, *, has_frame=True, fail_open=False):
        self.has_frame = has_frame
        self.fail_open = fail_open
        self.n_opens = 0
        self.n_releases = 0
        self.captures = []

    def open(self):
        if self.fail_open:
            raise DeviceAcquisitionError("no camera")
        self.n_opens += 1
        return self

    def capture_jpeg(self, *, scale, quality):
        self.captures.append((scale, quality))
        return b'\xff\xd8jpeg\xff\xd9' if self.has_frame else None

    def release(self):
        self.n_releases += 1


class FakeMicrophone:
    def __init__(self, *, samplerate=16000, fail_open=False):
        self.samplerate = samplerate
        self.fail_open = fail_open
        self.callback = None
        self.n_opens = 0
        self.n_starts = 0
        self.n_stops = 0
        self.n_closes = 0

    def open(self, callback):
        if self.fail_open:
            raise DeviceAcquisitionError("no microphone")
        self.n_opens += 1
        self.callback = callback
        return self

    def start(self):
        self.n_starts += 1

    def stop(self):
        self.n_stops += 1

    def close(self):
        self.n_closes += 1

    def emit(self, block):
        self.callback(np.asarray(block, dtype=np.float32))


class Rig:
    """A session wired to fakes."""

    def __init__(self, *, connector=None, camera=None, microphone=None, **kwargs):
        self.link = FakeLink()
        self.connector = connector or FakeConnector(self.link)
        self.camera = camera or FakeCamera()
        self.microphone = microphone or FakeMicrophone()
        self.channel = ControlChannel()
        self.states = []
        self.session = StreamingSession(
            self.channel,
            connector=self.connector,
            camera=self.camera,
            microphone=self.microphone,
            on_state_change=self.states.append,
            **kwargs,
        )

