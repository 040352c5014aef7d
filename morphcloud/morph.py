"""Morphing particle positions towards the active shape, frame after frame.

The animator owns the ``current`` positions handed to the renderer. Each frame, every
particle moves a fraction of the way to its (scaled, possibly jittered) target. The
fraction depends only on the frame's duration, so the motion looks the same whatever
the frame rate or however irregular the control updates.
"""

import logging
import time
from typing import Optional

import numpy as np

from morphcloud.control import ControlState
from morphcloud.shapes import DFLT_PARTICLE_COUNT, DFLT_SHAPE, generate, resolve_shape

logger = logging.getLogger(__name__)

LERP_RATE = 5.0  # per second
SCALE_MIN = 0.2
SCALE_SPAN = 1.8
TENSION_JITTER_THRESHOLD = 0.1
JITTER_AMPLITUDE = 0.25  # half-width of the jitter at tension 1
BASE_SPIN = 0.1  # radians per second
TENSION_SPIN = 2.0


def lerp_factor(dt: float, rate: float = LERP_RATE) -> float:
    """
    Fraction of the remaining distance covered in a frame of ``dt`` seconds.

    Clamped to ``[0, 1]`` so a long pause can't make particles overshoot.

    >>> lerp_factor(0.1)
    0.5
    >>> lerp_factor(3.0)
    1.0
    """
    return min(max(rate * dt, 0.0), 1.0)


def expansion_scale(expansion: float) -> float:
    """
    >>> expansion_scale(0.0), expansion_scale(1.0)
    (0.2, 2.0)
    """
    return SCALE_MIN + SCALE_SPAN * expansion


def spin_rate(tension: float) -> float:
    return BASE_SPIN + TENSION_SPIN * tension


class ParticleField:
    """
    The ``current`` (rendered) and ``target`` (ideal shape) positions of a fixed number
    of particles, as ``(count, 3)`` arrays.

    Setting a new target copies it into the existing ``target`` array: neither array is
    ever resized, reordered or reallocated, so views handed out (like ``buffer``) stay
    valid for the life of the field.
    """

    def __init__(self, target: np.ndarray):
        target = np.asarray(target, dtype=float)
        if target.ndim != 2 or target.shape[1] != 3:
            raise ValueError(f"target should be of shape (count, 3), was {target.shape}")
        self.target = target.copy()
        # Start at the origin, so the first shape blooms outwards
        self.current = np.zeros_like(self.target)

    @classmethod
    def from_shape(cls, shape=DFLT_SHAPE, count: int = DFLT_PARTICLE_COUNT, *, rng=None):
        return cls(generate(shape, count, rng=rng))

    def __len__(self):
        return len(self.current)

    def set_target(self, target: np.ndarray):
        target = np.asarray(target, dtype=float)
        if target.shape != self.target.shape:
            raise ValueError(
                f"Target shape {target.shape} doesn't match the field's {self.target.shape}"
            )
        np.copyto(self.target, target)

    @property
    def buffer(self) -> np.ndarray:
        """Flat ``3 * count`` view of ``current``, updated in place every frame."""
        return self.current.reshape(-1)


class MorphAnimator:
    """
    Advances a ``ParticleField`` one frame at a time.

    Besides the positions, it accumulates a rotation angle (radians, around the
    vertical axis) that spins faster with tension. The rotation is for the renderer to
    apply to the whole cloud; it isn't baked into the positions.

    >>> animator = MorphAnimator(ParticleField(np.ones((4, 3))))
    >>> for _ in range(60):
    ...     _ = animator.step(1 / 60, expansion=1.0, tension=0.0)
    >>> bool(np.allclose(animator.field.current, 2.0, rtol=0.01))
    True
    """

    def __init__(
        self,
        field: ParticleField,
        *,
        shape=DFLT_SHAPE,
        rng: Optional[np.random.Generator] = None,
        clock=time.perf_counter,
    ):
        self.field = field
        self.shape = resolve_shape(shape)
        self.rotation = 0.0
        self._rng = rng if rng is not None else np.random.default_rng()
        self._clock = clock
        self._last_frame_time = None
        self._target_point = np.empty_like(field.current)

    @classmethod
    def from_shape(cls, shape=DFLT_SHAPE, count=DFLT_PARTICLE_COUNT, *, rng=None, **kwargs):
        field = ParticleField.from_shape(shape, count, rng=rng)
        return cls(field, shape=shape, rng=rng, **kwargs)

    @property
    def current(self) -> np.ndarray:
        return self.field.current

    def set_shape(self, shape):
        """
        Switch to a freshly generated instance of ``shape``.

        Only the target changes: particles carry on from wherever they are.
        """
        shape = resolve_shape(shape)
        self.field.set_target(generate(shape, len(self.field), rng=self._rng))
        if shape is not self.shape:
            logger.debug("Morphing from %s to %s", self.shape.value, shape.value)
        self.shape = shape

    def step(self, dt: float, expansion: float, tension: float) -> np.ndarray:
        """
        Advance the animation by ``dt`` seconds and return ``current``.

        With tension above a small threshold, the target of each particle gets a new
        random offset every frame, which makes the cloud vibrate.
        """
        factor = lerp_factor(dt)
        target_point = self._target_point
        np.multiply(self.field.target, expansion_scale(expansion), out=target_point)
        if tension > TENSION_JITTER_THRESHOLD:
            half_width = tension * JITTER_AMPLITUDE
            target_point += self._rng.uniform(
                -half_width, half_width, size=target_point.shape
            )
        current = self.field.current
        current += (target_point - current) * factor
        self.rotation += dt * spin_rate(tension)
        return current

    def tick(self, state: ControlState) -> np.ndarray:
        """
        Animate one frame from a control state, timing the frame with the clock.

        Follows the state's shape, regenerating the target when it changed.
        """
        now = self._clock()
        dt = 0.0 if self._last_frame_time is None else now - self._last_frame_time
        self._last_frame_time = now
        if state.shape is not self.shape:
            self.set_shape(state.shape)
        return self.step(dt, state.expansion, state.tension)
