"""Turning raw media into chunks the recognition service accepts.

Audio goes out as 16 kHz mono little-endian 16 bit PCM, video as JPEG images.
Chunks hold raw bytes: the Live API client base64-encodes them on the wire.
"""

from dataclasses import dataclass

import numpy as np

TARGET_SAMPLE_RATE = 16000
AUDIO_MIME_TYPE = f'audio/pcm;rate={TARGET_SAMPLE_RATE}'
VIDEO_MIME_TYPE = 'image/jpeg'


@dataclass(frozen=True)
class MediaChunk:
    """A piece of media, tagged with its mime type."""

    mime_type: str
    data: bytes


# -------------------------------------------------------------------------------
# Audio
# -------------------------------------------------------------------------------


def downmix(block: np.ndarray) -> np.ndarray:
    """
    Average the channels of a ``(frames, channels)`` block into a mono ``(frames,)``
    block. Mono blocks are returned as they are.

    >>> downmix(np.array([[1.0, 0.0], [0.5, 0.5]]))
    array([0.5, 0.5], dtype=float32)
    """
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        return block
    return block.mean(axis=1)


class Resampler:
    """
    Linear-interpolation resampling of a stream of mono blocks.

    The position of the next output sample and the last input sample are carried
    from one block to the next, so the resampled blocks join up without clicks, and
    the output length follows the input exactly, however the stream is cut.

    >>> resampler = Resampler(48000)
    >>> [len(resampler(np.zeros(4096))) for _ in range(3)]
    [1366, 1365, 1365]
    """

    def __init__(self, rate: int, target_rate: int = TARGET_SAMPLE_RATE):
        self.rate = rate
        self.target_rate = target_rate
        self.step = rate / target_rate
        self._position = 0.0  # of the next output sample, from the start of the block
        self._last = None

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float32)
        if self.rate == self.target_rate or len(samples) == 0:
            return samples
        n = len(samples)
        if self._position > n - 1:
            n_out = 0
        else:
            n_out = int((n - 1 - self._position) // self.step) + 1
        positions = self._position + self.step * np.arange(n_out)
        if self._last is None:
            xp, fp = np.arange(n), samples
        else:
            # the previous block's last sample sits at position -1
            xp, fp = np.arange(-1, n), np.concatenate(([self._last], samples))
        resampled = np.interp(positions, xp, fp).astype(np.float32)
        self._position += n_out * self.step - n
        self._last = samples[-1]
        return resampled


def resample(samples: np.ndarray, rate: int, target_rate: int = TARGET_SAMPLE_RATE):
    """
    Resample a lone mono block (see ``Resampler`` for streams).

    >>> resample(np.arange(4.0), 32000, 16000)
    array([0., 2.], dtype=float32)
    >>> len(resample(np.zeros(4096), 48000))
    1366
    """
    return Resampler(rate, target_rate)(samples)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Convert ``[-1, 1]`` floats to signed 16 bit integers.

    Negative values are scaled by 32768, others by 32767, so both ends of the range
    map to the ends of int16. Out of range samples are clipped first.

    >>> float_to_pcm16(np.array([-1.0, -0.5, 0.0, 0.5, 1.0, 2.0]))
    array([-32768, -16384,      0,  16383,  32767,  32767], dtype=int16)
    """
    samples = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(samples < 0, samples * 32768, samples * 32767)
    return scaled.astype('<i2')


def encode_audio_block(block: np.ndarray, resampler) -> MediaChunk:
    """
    Make a 16 kHz mono PCM chunk from a block of float samples.

    ``resampler`` is the ``Resampler`` of the stream the block belongs to, or, for a
    lone block, the rate it was captured at.
    """
    if not isinstance(resampler, Resampler):
        resampler = Resampler(resampler)
    mono = resampler(downmix(block))
    return MediaChunk(AUDIO_MIME_TYPE, float_to_pcm16(mono).tobytes())


def encode_video_frame(jpeg_bytes: bytes) -> MediaChunk:
    return MediaChunk(VIDEO_MIME_TYPE, bytes(jpeg_bytes))
