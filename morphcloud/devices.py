"""Camera and microphone sources feeding the streaming session."""

import logging
import threading
import time
from typing import Callable, Optional

import cv2
import numpy as np

from morphcloud.util import MorphcloudError

logger = logging.getLogger(__name__)

DFLT_CAMERA = 0
DFLT_FRAME_SIZE = (640, 480)
VIDEO_SCALE = 0.5
JPEG_QUALITY = 0.6  # in [0, 1]
AUDIO_BLOCK_SIZE = 4096


class DeviceAcquisitionError(MorphcloudError):
    """The camera or microphone could not be opened."""


class CameraReadError(MorphcloudError):
    """Exception raised when camera read fails."""


# -------------------------------------------------------------------------------
# Image utils
# -------------------------------------------------------------------------------


def downscale(img: np.ndarray, scale: float = VIDEO_SCALE) -> np.ndarray:
    """Resize ``img`` by ``scale`` in both dimensions."""
    h, w = img.shape[:2]
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    return cv2.resize(img, size, interpolation=cv2.INTER_AREA)


def encode_jpeg(img: np.ndarray, quality: float = JPEG_QUALITY) -> bytes:
    """JPEG-compress a BGR image. ``quality`` goes from 0 to 1."""
    params = [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))]
    success, buffer = cv2.imencode('.jpg', img, params)
    if not success:
        raise ValueError(f"Could not JPEG-encode image of shape {img.shape}")
    return buffer.tobytes()


def read_camera(cap: cv2.VideoCapture, *, flip: bool = False) -> np.ndarray:
    """
    Read a frame from the camera, optionally flipping it horizontally.

    Raises:
        CameraReadError: If the camera read operation fails
    """
    success, img = cap.read()
    if not success:
        raise CameraReadError("Failed to read from camera")
    if flip:
        img = cv2.flip(img, 1)
    return img


# -------------------------------------------------------------------------------
# Camera
# -------------------------------------------------------------------------------


class CameraSource:
    """
    Keeps the latest frame of a camera.

    Once opened, a background thread reads frames as fast as the camera delivers
    them, so that ``current_frame`` never waits: it's None until the first frame
    arrived.
    """

    def __init__(
        self,
        device=DFLT_CAMERA,
        *,
        frame_size=DFLT_FRAME_SIZE,
        flip: bool = False,
        capture_factory: Callable = cv2.VideoCapture,
    ):
        self.device = device
        self.frame_size = frame_size
        self.flip = flip
        self._capture_factory = capture_factory
        self._cap = None
        self._frame = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reader = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self):
        if self._cap is not None:
            return self
        cap = self._capture_factory(self.device)
        if not cap.isOpened():
            cap.release()
            raise DeviceAcquisitionError(f"Could not open camera {self.device!r}")
        if self.frame_size:
            width, height = self.frame_size
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap = cap
        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_frames, name='camera-reader', daemon=True
        )
        self._reader.start()
        logger.info("Opened camera %r", self.device)
        return self

    def _read_frames(self):
        cap = self._cap
        while not self._stop.is_set():
            try:
                img = read_camera(cap, flip=self.flip)
            except CameraReadError:
                time.sleep(0.01)
                continue
            with self._lock:
                self._frame = img

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._frame

    def capture_jpeg(
        self, *, scale: float = VIDEO_SCALE, quality: float = JPEG_QUALITY
    ) -> Optional[bytes]:
        """The current frame, downscaled and JPEG-encoded, or None if there's no frame yet."""
        img = self.current_frame()
        if img is None or img.size == 0:
            return None
        return encode_jpeg(downscale(img, scale), quality)

    def release(self):
        """Stop reading and release the camera. Safe to call more than once."""
        cap, self._cap = self._cap, None
        if cap is None:
            return
        self._stop.set()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._reader = None
        cap.release()
        with self._lock:
            self._frame = None
        logger.info("Released camera %r", self.device)

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.release()


# -------------------------------------------------------------------------------
# Microphone
# -------------------------------------------------------------------------------


class MicrophoneSource:
    """
    Delivers fixed-size blocks of float samples from a microphone, at the device's
    native sample rate, to a callback.

    The callback runs on the audio driver's thread, and is called with a
    ``(blocksize, channels)`` float32 array.
    """

    def __init__(
        self,
        device=None,
        *,
        blocksize: int = AUDIO_BLOCK_SIZE,
        channels: Optional[int] = None,
    ):
        self.device = device
        self.blocksize = blocksize
        self.channels = channels
        self.samplerate = None
        self._stream = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self, callback: Callable[[np.ndarray], None]):
        """Acquire the input device. Blocks aren't delivered until ``start``."""
        if self._stream is not None:
            return self
        try:
            # Imported here: sounddevice needs the PortAudio library when imported
            import sounddevice as sd
        except OSError as e:
            raise DeviceAcquisitionError(f"PortAudio is not available: {e}") from e
        try:
            info = sd.query_devices(self.device, 'input')
            self.samplerate = int(info['default_samplerate'])
            channels = self.channels or min(2, int(info['max_input_channels'])) or 1

            def _callback(indata, frames, time_info, status):
                if status:
                    logger.debug("Microphone status: %s", status)
                callback(indata.copy())

            self._stream = sd.InputStream(
                device=self.device,
                samplerate=self.samplerate,
                blocksize=self.blocksize,
                channels=channels,
                dtype='float32',
                callback=_callback,
            )
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceAcquisitionError(f"Could not open microphone: {e}") from e
        logger.info(
            "Opened microphone %r at %s Hz (%s channels)",
            self.device,
            self.samplerate,
            channels,
        )
        return self

    def start(self):
        import sounddevice as sd

        try:
            self._stream.start()
        except sd.PortAudioError as e:
            raise DeviceAcquisitionError(f"Could not start microphone: {e}") from e

    def stop(self):
        """Stop delivering blocks. Safe to call more than once."""
        if self._stream is not None and not self._stream.stopped:
            self._stream.stop()

    def close(self):
        """Release the input device. Safe to call more than once."""
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()
            logger.info("Released microphone %r", self.device)
