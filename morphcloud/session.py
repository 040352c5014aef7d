"""The streaming session with the remote gesture recognizer.

While the session is open, two producers stream media to the remote:

* the audio producer sends every microphone block, in order, as 16 kHz mono PCM
* the video producer sends a downscaled JPEG of the camera's current frame, 10 times
  a second

and the remote's function calls come back as control samples, pushed to a
``ControlChannel``. Every call is acknowledged, or the remote stops making them.

States go ``IDLE -> CONNECTING -> OPEN -> CLOSING -> IDLE``. A process has at most one
session that isn't idle. Teardown (on ``disconnect``, when the remote closes, or on a
transport error) first clears the liveness flag every producer checks before acting,
then releases each device and timer exactly once, however many times and from
wherever it was triggered.
"""

import asyncio
import logging
import threading
from contextlib import ExitStack
from enum import Enum
from typing import Callable, Optional

import numpy as np

from morphcloud.codec import (
    MediaChunk,
    Resampler,
    encode_audio_block,
    encode_video_frame,
)
from morphcloud.control import (
    CONTROL_FUNCTION_NAME,
    DFLT_RANGE_POLICY,
    RANGE_POLICIES,
    ControlChannel,
    ProtocolError,
    parse_control_args,
)
from morphcloud.devices import JPEG_QUALITY, VIDEO_SCALE, DeviceAcquisitionError
from morphcloud.live import FunctionCall, TransportError
from morphcloud.util import MorphcloudError, return_none

logger = logging.getLogger(__name__)

VIDEO_FPS = 10


class SessionState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSING = 'closing'


class SessionActiveError(MorphcloudError, RuntimeError):
    """Tried to connect while a session is already connecting, open or closing."""


# -------------------------------------------------------------------------------
# Producers
# -------------------------------------------------------------------------------


class PeriodicTimer:
    """
    Awaits ``callback()`` every ``interval`` seconds, in a task, until cancelled.

    Ticks are scheduled on a fixed grid (not ``interval`` after the end of the previous
    tick), so a slow tick doesn't make the next ones late.
    """

    def __init__(self, interval: float, callback: Callable, *, name: str = None):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self._task

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            await self.callback()
            next_tick += self.interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def cancel(self):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        return task


class AudioProducer:
    """
    Streams microphone blocks as 16 kHz mono PCM chunks.

    The microphone calls back on its own thread; blocks are handed to the event loop
    through a queue, and a single task encodes and sends them, so they go out in the
    order they were captured, each exactly once.
    """

    def __init__(self, microphone, send: Callable, *, is_live: Callable[[], bool]):
        self.microphone = microphone
        self._send = send
        self._is_live = is_live
        self._loop = None
        self._queue = None
        self._task = None
        self._resampler = None

    def open(self):
        self.microphone.open(self._on_block)

    def _on_block(self, block: np.ndarray):
        # Called on the audio thread
        if not self._is_live():
            return
        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, block)
        except RuntimeError:
            logger.debug("Event loop closed, dropping audio block")

    def start(self) -> asyncio.Task:
        self._loop = asyncio.get_running_loop()
        # one resampler per stream, so blocks join up without gaps
        self._resampler = Resampler(self.microphone.samplerate)
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._pump(), name='audio-producer')
        self.microphone.start()
        return self._task

    async def _pump(self):
        while True:
            block = await self._queue.get()
            if not self._is_live():
                continue
            try:
                chunk = encode_audio_block(block, self._resampler)
            except Exception:
                logger.exception("Failed to encode an audio block, dropping it")
                continue
            await self._send(chunk)

    def stop_processing(self):
        task, self._task = self._task, None
        self._queue = None
        if task is not None:
            task.cancel()
        return task

    def stop_source(self):
        self.microphone.stop()

    def close_device(self):
        self.microphone.close()


class VideoProducer:
    """
    Sends the camera's current frame, downscaled and JPEG-encoded, at a fixed rate.

    A tick with no frame available (the camera hasn't delivered one yet) is skipped.
    """

    def __init__(
        self,
        camera,
        send: Callable,
        *,
        is_live: Callable[[], bool],
        fps: float = VIDEO_FPS,
        scale: float = VIDEO_SCALE,
        quality: float = JPEG_QUALITY,
    ):
        self.camera = camera
        self.fps = fps
        self.scale = scale
        self.quality = quality
        self._send = send
        self._is_live = is_live
        self._timer = None

    def open(self):
        self.camera.open()

    def start(self) -> asyncio.Task:
        self._timer = PeriodicTimer(1 / self.fps, self.tick, name='video-producer')
        return self._timer.start()

    async def tick(self):
        if not self._is_live():
            return
        try:
            jpeg = self.camera.capture_jpeg(scale=self.scale, quality=self.quality)
        except Exception:
            logger.exception("Failed to capture a video frame, skipping video tick")
            return
        if jpeg is None:
            logger.debug("No camera frame yet, skipping video tick")
            return
        await self._send(encode_video_frame(jpeg))

    def cancel_timer(self):
        timer, self._timer = self._timer, None
        if timer is not None:
            return timer.cancel()

    def release_camera(self):
        self.camera.release()


# -------------------------------------------------------------------------------
# Session
# -------------------------------------------------------------------------------


def _logged_release(name, release):
    def _release():
        try:
            release()
        except Exception:
            logger.warning("Failed to release the %s", name, exc_info=True)

    return _release


class StreamingSession:
    """
    One live session with the gesture recognizer.

    Args:
        channel: Where control samples go
        connector: Has an ``open()`` coroutine returning a link (see ``morphcloud.live``)
        camera: A ``CameraSource`` (or anything with ``open``, ``capture_jpeg``,
            ``release``)
        microphone: A ``MicrophoneSource`` (or anything with ``open(callback)``,
            ``samplerate``, ``start``, ``stop``, ``close``)
        range_policy: What to do with out-of-range values, ``'reject'`` or ``'clamp'``
        on_state_change: Called with the new ``SessionState`` on every transition
        video_fps: Video frames per second
    """

    _active_session = None
    _active_lock = threading.Lock()

    def __init__(
        self,
        channel: ControlChannel,
        *,
        connector,
        camera,
        microphone,
        range_policy: str = DFLT_RANGE_POLICY,
        on_state_change: Optional[Callable] = None,
        video_fps: float = VIDEO_FPS,
    ):
        if range_policy not in RANGE_POLICIES:
            raise ValueError(
                f"range_policy should be one of {RANGE_POLICIES}, was {range_policy!r}"
            )
        self.channel = channel
        self.range_policy = range_policy
        self._connector = connector
        self._on_state_change = on_state_change or return_none
        self._audio = AudioProducer(microphone, self._transmit, is_live=self._check_live)
        self._video = VideoProducer(
            camera, self._transmit, is_live=self._check_live, fps=video_fps
        )

        self._state = SessionState.IDLE
        self._live = False
        self._link = None
        self._resources = ExitStack()
        self._tasks = set()
        self._closing = False
        self._closed = None
        self._close_task = None
        self.error = None
        self.n_accepted = 0
        self.n_dropped = 0

    # state --------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._live

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.OPEN

    def _check_live(self) -> bool:
        return self._live

    def _set_state(self, state: SessionState):
        if state is self._state:
            return
        logger.info("Session %s -> %s", self._state.value, state.value)
        self._state = state
        try:
            self._on_state_change(state)
        except Exception:
            logger.exception("State change callback failed")

    def _claim(self):
        cls = type(self)
        with cls._active_lock:
            if self._state is not SessionState.IDLE:
                raise SessionActiveError(f"Session is already {self._state.value}")
            active = cls._active_session
            if active is not None and active is not self:
                raise SessionActiveError("Another session is already active")
            cls._active_session = self

    def _unclaim(self):
        cls = type(self)
        with cls._active_lock:
            if cls._active_session is self:
                cls._active_session = None

    # connecting ---------------------------------------------------------------

    async def connect(self):
        """
        Acquire the camera and microphone, connect, and start streaming.

        Returns once the session is open. There's no timeout: an unresponsive remote
        leaves the session connecting until ``disconnect`` is called, which cancels
        the pending ``connect`` (it then raises ``asyncio.CancelledError``).

        Raises:
            SessionActiveError: If this (or another) session isn't idle
            DeviceAcquisitionError: If a device couldn't be opened (the session
                stays idle)
            TransportError: If the connection failed (the session is back to idle)
        """
        self._claim()
        self._closing = False
        self._closed = asyncio.Event()
        self.error = None
        try:
            self._audio.open()
            self._resources.callback(
                _logged_release('microphone device', self._audio.close_device)
            )
            self._video.open()
            self._resources.callback(
                _logged_release('camera', self._video.release_camera)
            )
        except DeviceAcquisitionError:
            self._resources.close()
            self._unclaim()
            self._closed.set()
            raise

        self._set_state(SessionState.CONNECTING)
        connect_task = asyncio.current_task()
        self._tasks.add(connect_task)
        try:
            link = await self._connector.open()
        except TransportError as e:
            logger.error("%s", e)
            await self._close(e)
            raise
        except asyncio.CancelledError:
            if not self._closing:
                await self._close()
            raise
        finally:
            self._tasks.discard(connect_task)

        if self._closing:
            # disconnect() came in while the connector was finishing
            await link.close()
            return

        self._link = link
        self._live = True
        self._set_state(SessionState.OPEN)
        self._resources.callback(
            _logged_release('audio source', self._audio.stop_source)
        )
        self._resources.callback(
            _logged_release('audio processor', self._audio.stop_processing)
        )
        self._resources.callback(
            _logged_release('video timer', self._video.cancel_timer)
        )
        try:
            self._track(self._audio.start())
        except DeviceAcquisitionError as e:
            logger.error("%s", e)
            await self._close(e)
            raise
        self._track(self._video.start())
        self._spawn(self._receive_calls(link), name='control-receiver')

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not self._closing:
            logger.error("Task %s failed", task.get_name(), exc_info=error)
            self._schedule_close(error)

    def _spawn(self, coro, *, name=None):
        return self._track(asyncio.create_task(coro, name=name))

    # outbound -----------------------------------------------------------------

    async def _transmit(self, chunk: MediaChunk):
        if not self._live or self._link is None:
            return
        try:
            await self._link.send_media(chunk)
        except TransportError as e:
            logger.error("%s", e)
            self._schedule_close(e)

    # inbound ------------------------------------------------------------------

    async def _receive_calls(self, link):
        try:
            async for call in link.calls():
                if not self._live:
                    break
                await self.handle_call(call)
        except TransportError as e:
            logger.error("%s", e)
            self._schedule_close(e)
            return
        if self._live:
            logger.info("Remote closed the session")
        self._schedule_close()

    async def handle_call(self, call: FunctionCall):
        """
        Turn a control function call into a control sample and acknowledge it.

        A call with bad arguments is dropped, but still acknowledged so the remote
        keeps calling. Calls to other functions are ignored.
        """
        if call.name != CONTROL_FUNCTION_NAME:
            logger.debug("Ignoring call to unknown function %r", call.name)
            return
        try:
            sample = parse_control_args(call.args, range_policy=self.range_policy)
        except ProtocolError as e:
            self.n_dropped += 1
            logger.debug("Dropped call %s: %s", call.id, e)
        else:
            self.channel.publish(sample)
            self.n_accepted += 1
        await self._acknowledge(call)

    async def _acknowledge(self, call: FunctionCall):
        if not self._live or self._link is None:
            return
        try:
            await self._link.send_ack(call)
        except TransportError as e:
            logger.warning("Could not acknowledge call %s: %s", call.id, e)

    # closing ------------------------------------------------------------------

    def _schedule_close(self, error: Optional[BaseException] = None):
        if self._closing:
            return
        self._close_task = asyncio.get_running_loop().create_task(
            self._close(error), name='session-close'
        )

    async def disconnect(self):
        """
        Close the session and release the devices. Returns once the session is idle.

        Can be called any number of times, in any state.
        """
        if self._state is SessionState.IDLE:
            return
        await self._close()

    async def _close(self, error: Optional[BaseException] = None):
        if error is not None and self.error is None:
            self.error = error
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        self._live = False
        self._set_state(SessionState.CLOSING)

        # Devices and timers: synchronously, each exactly once
        self._resources.close()

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        link, self._link = self._link, None
        if link is not None:
            try:
                await link.close()
            except Exception:
                logger.warning("Failed to close the link", exc_info=True)

        self._set_state(SessionState.IDLE)
        self._unclaim()
        self._closed.set()

    async def wait_closed(self):
        """
        Wait until the session is back to idle.

        Raises:
            TransportError: If the session was closed by a transport error (or
                whatever error made a producer fail)
        """
        if self._closed is not None:
            await self._closed.wait()
        if self.error is not None:
            raise self.error
