"""Control samples and the channel that carries the latest one to the animation.

The streaming session writes samples as function calls come in (a few per second,
at irregular times); the animation loop reads the channel once per frame. The
channel holds a single value: a reader always sees the most recent sample, and
intermediate samples it did not get to read are simply lost.
"""

import math
import threading
import time
from dataclasses import dataclass, replace
from numbers import Real
from typing import Mapping, Optional

from morphcloud.shapes import DFLT_SHAPE, ShapeDescriptor, resolve_shape
from morphcloud.util import MorphcloudError, clamp

CONTROL_FUNCTION_NAME = 'updateParticleControl'

DFLT_EXPANSION = 0.8
DFLT_TENSION = 0.0

RANGE_POLICIES = ('reject', 'clamp')
DFLT_RANGE_POLICY = 'reject'


class ProtocolError(MorphcloudError, ValueError):
    """The arguments of an inbound function call can't be made into a control sample."""


@dataclass(frozen=True)
class ControlSample:
    """
    One control update: how spread out (``expansion``) and how agitated
    (``tension``) the cloud should be, and optionally which shape to show.
    """

    expansion: float
    tension: float
    shape: Optional[ShapeDescriptor] = None

    def __post_init__(self):
        for name in ('expansion', 'tension'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], was {value}")


@dataclass(frozen=True)
class ControlState:
    """What readers of a ``ControlChannel`` see."""

    expansion: float = DFLT_EXPANSION
    tension: float = DFLT_TENSION
    shape: ShapeDescriptor = DFLT_SHAPE
    updated_at: float = 0.0  # time.time() of the last write, 0 if never written


# -------------------------------------------------------------------------------
# Parsing inbound function call arguments
# -------------------------------------------------------------------------------


def _number(args: Mapping, name: str) -> float:
    if name not in args or args[name] is None:
        raise ProtocolError(f"Missing {name!r}")
    value = args[name]
    # bool is a subclass of int, but True is not a meaningful tension
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ProtocolError(f"{name!r} is not a number: {value!r}")
    value = float(value)
    if math.isnan(value):
        raise ProtocolError(f"{name!r} is NaN")
    return value


def _in_range(name, value, range_policy):
    if 0.0 <= value <= 1.0:
        return value
    if range_policy == 'clamp':
        return clamp(value)
    raise ProtocolError(f"{name!r} out of [0, 1]: {value}")


def parse_control_args(
    args: Optional[Mapping], *, range_policy: str = DFLT_RANGE_POLICY
) -> ControlSample:
    """
    Make a ``ControlSample`` from the arguments of an ``updateParticleControl`` call.

    ``expansion`` and ``tension`` are required numbers. ``shape`` is optional and
    matched case-insensitively; a shape we don't know (or that isn't even a string)
    becomes the sphere.
    Values outside ``[0, 1]`` are rejected, or clamped if ``range_policy='clamp'``.

    >>> parse_control_args({'expansion': 0.5, 'tension': 0, 'shape': 'flower'})
    ControlSample(expansion=0.5, tension=0.0, shape=<ShapeDescriptor.FLOWER: 'Flower'>)
    >>> parse_control_args({'expansion': 1.5, 'tension': 0.2}, range_policy='clamp')
    ControlSample(expansion=1.0, tension=0.2, shape=None)
    >>> parse_control_args({'expansion': 0.5})
    Traceback (most recent call last):
      ...
    morphcloud.control.ProtocolError: Missing 'tension'

    Raises:
        ProtocolError: If the arguments are missing, not numbers, or out of range
            (with the ``'reject'`` policy).
    """
    if range_policy not in RANGE_POLICIES:
        raise ValueError(
            f"range_policy should be one of {RANGE_POLICIES}, was {range_policy!r}"
        )
    if not isinstance(args, Mapping):
        raise ProtocolError(f"Arguments should be a mapping, were {type(args)}")

    expansion = _in_range('expansion', _number(args, 'expansion'), range_policy)
    tension = _in_range('tension', _number(args, 'tension'), range_policy)

    shape = args.get('shape')
    shape = resolve_shape(shape) if shape is not None and shape != '' else None

    return ControlSample(expansion=expansion, tension=tension, shape=shape)


# -------------------------------------------------------------------------------
# The channel
# -------------------------------------------------------------------------------


class ControlChannel:
    """
    A single slot, last write wins, holding the current control state.

    Writes come from the streaming session (and from manual controls); reads come
    from the animation loop and status displays, possibly on other threads. A lock
    guards the slot so readers always get a consistent ``ControlState``.

    >>> channel = ControlChannel()
    >>> channel.publish(ControlSample(0.3, 0.9, ShapeDescriptor.SATURN))
    >>> channel.publish(ControlSample(0.4, 0.1))
    >>> state = channel.read()
    >>> state.expansion, state.tension, state.shape.value
    (0.4, 0.1, 'Saturn')
    """

    def __init__(
        self,
        *,
        expansion: float = DFLT_EXPANSION,
        tension: float = DFLT_TENSION,
        shape=DFLT_SHAPE,
        clock=time.time,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ControlState(
            expansion=expansion, tension=tension, shape=resolve_shape(shape)
        )
        self._n_updates = 0

    def publish(self, sample: ControlSample):
        """Replace the current state with ``sample``. A sample without shape keeps the shape."""
        with self._lock:
            self._state = ControlState(
                expansion=sample.expansion,
                tension=sample.tension,
                shape=sample.shape if sample.shape is not None else self._state.shape,
                updated_at=self._clock(),
            )
            self._n_updates += 1

    def update(self, **changes):
        """
        Change some fields of the state (``expansion``, ``tension`` or ``shape``),
        keeping the others. Used by manual controls. Values are clamped to ``[0, 1]``
        and unknown shapes become the sphere, as for samples.
        """
        unknown = set(changes) - {'expansion', 'tension', 'shape'}
        if unknown:
            raise TypeError(f"Unknown control fields: {sorted(unknown)}")
        if 'shape' in changes:
            changes['shape'] = resolve_shape(changes['shape'])
        for name in ('expansion', 'tension'):
            if name in changes:
                changes[name] = clamp(float(changes[name]))
        with self._lock:
            self._state = replace(self._state, **changes)

    def read(self) -> ControlState:
        with self._lock:
            return self._state

    @property
    def n_updates(self) -> int:
        """Number of samples published so far."""
        with self._lock:
            return self._n_updates

    @property
    def last_update(self) -> float:
        return self.read().updated_at
