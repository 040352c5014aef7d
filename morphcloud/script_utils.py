"""Utility functions for running the particle cloud app."""

import asyncio
import json
import logging
import os
import threading
import time
from concurrent.futures import Future
from functools import partial
from typing import Any, Callable, Dict, Optional

import cv2

from morphcloud.control import (
    DFLT_EXPANSION,
    DFLT_RANGE_POLICY,
    DFLT_TENSION,
    ControlChannel,
    ControlState,
)
from morphcloud.devices import DFLT_CAMERA, CameraSource, MicrophoneSource
from morphcloud.display import (
    DFLT_COLOR,
    DFLT_POINT_SIZE,
    DFLT_WINDOW_SIZE,
    render_frame,
    status_features,
)
from morphcloud.live import DFLT_MODEL, GeminiLiveConnector
from morphcloud.morph import MorphAnimator
from morphcloud.session import SessionState, StreamingSession
from morphcloud.shapes import DFLT_PARTICLE_COUNT, DFLT_SHAPE, ShapeDescriptor
from morphcloud.util import (
    MorphcloudError,
    format_milliseconds_time,
    return_none as do_nothing,
)

logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = ('GEMINI_API_KEY', 'GOOGLE_API_KEY')


class MissingApiKeyError(MorphcloudError):
    """No API key was given, and none is set in the environment."""


def find_api_key(api_key: Optional[str] = None) -> Optional[str]:
    if api_key:
        return api_key
    for name in API_KEY_ENV_VARS:
        if os.environ.get(name):
            return os.environ[name]
    return None


# -------------------------------------------------------------------------------
# Background event loop
# -------------------------------------------------------------------------------


class EventLoopThread:
    """
    An asyncio event loop running in a daemon thread.

    The streaming session lives there, so that the render loop (which OpenCV wants on
    the main thread) and the media streaming never wait on each other.
    """

    def __init__(self, name: str = 'morphcloud-session'):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self, timeout: float = 5.0):
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        if not self._thread.is_alive():
            self.loop.close()


# -------------------------------------------------------------------------------
# Controller
# -------------------------------------------------------------------------------


class ParticleController:
    """
    What a user interface sees of the app.

    ``shape``, ``color``, ``expansion`` and ``tension`` can be read and set (the
    recognizer sets them too, through the session); ``is_connected`` and
    ``last_update`` tell whether the recognizer is driving the particles.

    Args:
        api_key: Gemini API key (default: from the environment)
        shape: Initial shape
        color: Particle color
        expansion: Initial expansion
        tension: Initial tension
        camera: Camera device index
        microphone: Microphone device (default: the system's default input)
        model: Live API model
        range_policy: What to do with out-of-range control values
        session_factory: Makes the ``StreamingSession``, given the channel, the api
            key and ``on_state_change`` (by default, ``make_session``)
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        shape=DFLT_SHAPE,
        color: str = DFLT_COLOR,
        expansion: float = DFLT_EXPANSION,
        tension: float = DFLT_TENSION,
        camera=DFLT_CAMERA,
        microphone=None,
        model: str = DFLT_MODEL,
        range_policy: str = DFLT_RANGE_POLICY,
        session_factory: Optional[Callable] = None,
    ):
        self.channel = ControlChannel(expansion=expansion, tension=tension, shape=shape)
        self.color = color
        self.api_key = api_key
        self.session_factory = session_factory or partial(
            make_session,
            camera=camera,
            microphone=microphone,
            model=model,
            range_policy=range_policy,
        )
        self.session = None
        self._loop_thread = None

    # control state ------------------------------------------------------------

    @property
    def state(self) -> ControlState:
        return self.channel.read()

    @property
    def shape(self) -> ShapeDescriptor:
        return self.state.shape

    @shape.setter
    def shape(self, shape):
        self.channel.update(shape=shape)

    @property
    def expansion(self) -> float:
        return self.state.expansion

    @expansion.setter
    def expansion(self, value):
        self.channel.update(expansion=value)

    @property
    def tension(self) -> float:
        return self.state.tension

    @tension.setter
    def tension(self, value):
        self.channel.update(tension=value)

    @property
    def last_update(self) -> float:
        """``time.time()`` of the last update received from the recognizer (0 if none)."""
        return self.channel.last_update

    # session ------------------------------------------------------------------

    @property
    def session_state(self) -> SessionState:
        return self.session.state if self.session is not None else SessionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_connected

    def _on_state_change(self, state: SessionState):
        print(f"\n---> Session {state.value}\n")

    def connect(self) -> Future:
        """
        Start connecting, in the background. Returns the future of the connection.

        Raises:
            MissingApiKeyError: If there's no API key to connect with
        """
        api_key = find_api_key(self.api_key)
        if not api_key:
            raise MissingApiKeyError(
                f"Please provide an API key (or set one of {', '.join(API_KEY_ENV_VARS)})"
            )
        if self.session is None:
            self.session = self.session_factory(
                self.channel, api_key=api_key, on_state_change=self._on_state_change
            )
        if self._loop_thread is None:
            self._loop_thread = EventLoopThread()
        future = self._loop_thread.submit(self.session.connect())
        future.add_done_callback(_report_connection)
        return future

    def disconnect(self, timeout: float = 5.0):
        if self.session is None or self._loop_thread is None:
            return
        self._loop_thread.submit(self.session.disconnect()).result(timeout)

    def close(self):
        """Disconnect and stop the background loop."""
        try:
            self.disconnect()
        finally:
            if self._loop_thread is not None:
                self._loop_thread.stop()
                self._loop_thread = None


def _report_connection(future: Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Failed to connect: %s", error)
        print(f"Failed to start the camera/microphone or connect: {error}")


def make_session(
    channel: ControlChannel,
    *,
    api_key: str,
    on_state_change: Optional[Callable] = None,
    camera=DFLT_CAMERA,
    microphone=None,
    model: str = DFLT_MODEL,
    range_policy: str = DFLT_RANGE_POLICY,
) -> StreamingSession:
    return StreamingSession(
        channel,
        connector=GeminiLiveConnector(api_key, model=model),
        camera=CameraSource(camera),
        microphone=MicrophoneSource(microphone),
        range_policy=range_policy,
        on_state_change=on_state_change,
    )


# -------------------------------------------------------------------------------
# Logging utilities
# -------------------------------------------------------------------------------


def control_state_to_dict(state: ControlState) -> Dict[str, Any]:
    return {
        'expansion': state.expansion,
        'tension': state.tension,
        'shape': state.shape.value,
        'time': format_milliseconds_time(state.updated_at),
    }


def print_json_if_possible(x):
    """Prints the input (as JSON, if it can be) and adds a newline."""
    try:
        x = json.dumps(x)
    except (TypeError, ValueError):
        pass
    print(x)
    print()


# -------------------------------------------------------------------------------
# Keyboard handling functions
# -------------------------------------------------------------------------------


class KeyboardBreakSignal(Exception):
    """Exception raised when a break key is pressed."""


ESCAPE_KEY_ASCII = 27
BREAK_KEYS = {ESCAPE_KEY_ASCII, ord('q')}
EXPANSION_STEP = 0.1
TENSION_STEP = 0.1

# number keys pick a shape
shape_keys = {ord(str(i)): shape for i, shape in enumerate(ShapeDescriptor, start=1)}


def read_keyboard(wait_time: int = 5) -> int:
    """
    Read keyboard input with the specified wait time.

    Args:
        wait_time: Time to wait for keyboard input in milliseconds

    Returns:
        The key code or 255 if no key was pressed
    """
    return cv2.waitKey(wait_time) & 0xFF


def handle_key(controller: ParticleController, key_code: int):
    """
    Apply a key press to the controller.

    Raises:
        KeyboardBreakSignal: If a key that signals program termination is pressed
    """
    if key_code in BREAK_KEYS:
        raise KeyboardBreakSignal(f"Break key pressed: {key_code}")
    if key_code in shape_keys:
        controller.shape = shape_keys[key_code]
    elif key_code in (ord('+'), ord('=')):
        controller.expansion = controller.expansion + EXPANSION_STEP
    elif key_code == ord('-'):
        controller.expansion = controller.expansion - EXPANSION_STEP
    elif key_code == ord(']'):
        controller.tension = controller.tension + TENSION_STEP
    elif key_code == ord('['):
        controller.tension = controller.tension - TENSION_STEP
    elif key_code == ord('c'):
        try:
            controller.connect()
        except MissingApiKeyError as e:
            print(e)
    elif key_code == ord('d'):
        controller.disconnect()


KEYS_HELP = (
    "c: connect, d: disconnect, "
    + ", ".join(f"{chr(k)}: {s.value}" for k, s in shape_keys.items())
    + ", +/-: expansion, [/]: tension, q or Esc: quit"
)


# -------------------------------------------------------------------------------
# Main run function
# -------------------------------------------------------------------------------


def run_particles(
    *,
    controller: Optional[ParticleController] = None,
    count: int = DFLT_PARTICLE_COUNT,
    window_name: str = 'Gesture Controlled Particles',
    window_size=DFLT_WINDOW_SIZE,
    point_size: float = DFLT_POINT_SIZE,
    connect: bool = False,
    log_control: Optional[Callable] = None,
    show_status: bool = True,
):
    """
    Run the particle cloud app: animate and draw the particles until a break key.

    Args:
        controller: The app state (a fresh ``ParticleController`` by default)
        count: Number of particles
        window_name: Title for the display window
        window_size: ``(width, height)`` of the window
        point_size: Particle size, in scene units
        connect: Whether to connect to the recognizer right away
        log_control: Function called with each new control state (or None)
        show_status: Whether to write the status over the particles
    """
    controller = controller or ParticleController()
    log_control = log_control or do_nothing
    animator = MorphAnimator.from_shape(controller.shape, count)
    last_logged_update = None

    print(f"\n{KEYS_HELP}\n")
    if connect:
        try:
            controller.connect()
        except MissingApiKeyError as e:
            print(e)

    try:
        while True:
            try:
                handle_key(controller, read_keyboard())
            except KeyboardBreakSignal:
                break

            state = controller.state
            animator.tick(state)

            if state.updated_at != last_logged_update:
                last_logged_update = state.updated_at
                log_control(control_state_to_dict(state))

            status = None
            if show_status:
                status = status_features(
                    state, session_state=controller.session_state.value, now=time.time()
                )
            img = render_frame(
                animator.field.buffer,
                animator.rotation,
                size=window_size,
                color=controller.color,
                point_size=point_size,
                status=status,
            )
            cv2.imshow(window_name, img)
    finally:
        controller.close()
        cv2.destroyAllWindows()
