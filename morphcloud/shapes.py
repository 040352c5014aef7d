"""Procedural point clouds for the particle shapes.

Every generator draws a fresh random instance of its shape family: two calls with
the same shape give different points that follow the same silhouette.
Positions are returned as a ``(count, 3)`` float array of ``x, y, z`` rows.
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------------------
# Shape descriptors
# -------------------------------------------------------------------------------


class ShapeDescriptor(str, Enum):
    HEART = 'Heart'
    FLOWER = 'Flower'
    SATURN = 'Saturn'
    MEDITATE = 'Meditate'
    FIREWORKS = 'Fireworks'
    SPHERE = 'Sphere'


SHAPE_NAMES = tuple(shape.value for shape in ShapeDescriptor)
DFLT_SHAPE = ShapeDescriptor.HEART
FALLBACK_SHAPE = ShapeDescriptor.SPHERE
DFLT_PARTICLE_COUNT = 8000

_shapes_by_lower_name = {shape.value.lower(): shape for shape in ShapeDescriptor}


def match_shape(name) -> Optional[ShapeDescriptor]:
    """
    Case-insensitive lookup of a shape name. Returns None if nothing matches.

    >>> match_shape('saturn')
    <ShapeDescriptor.SATURN: 'Saturn'>
    >>> match_shape('Dragon') is None
    True
    """
    if isinstance(name, ShapeDescriptor):
        return name
    if not isinstance(name, str):
        return None
    return _shapes_by_lower_name.get(name.strip().lower())


def resolve_shape(shape: Union[str, ShapeDescriptor, None]) -> ShapeDescriptor:
    """
    Like ``match_shape``, but unknown shapes fall back to the sphere.

    >>> resolve_shape('HEART')
    <ShapeDescriptor.HEART: 'Heart'>
    >>> resolve_shape('Dragon')
    <ShapeDescriptor.SPHERE: 'Sphere'>
    """
    matched = match_shape(shape)
    if matched is None:
        logger.debug("Unknown shape %r, falling back to %s", shape, FALLBACK_SHAPE.value)
        return FALLBACK_SHAPE
    return matched


# -------------------------------------------------------------------------------
# Sampling helpers
# -------------------------------------------------------------------------------


def _uniform(rng, low, high, count):
    return low + (high - low) * rng.random(count)


def points_in_sphere(count: int, radius: float, *, rng=None) -> np.ndarray:
    """Uniform random points inside a ball of the given radius."""
    rng = rng if rng is not None else np.random.default_rng()
    u = rng.random(count)
    v = rng.random(count)
    theta = 2 * np.pi * u
    phi = np.arccos(2 * v - 1)
    r = radius * np.cbrt(rng.random(count))
    sin_phi = np.sin(phi)
    return np.column_stack(
        (
            r * sin_phi * np.cos(theta),
            r * sin_phi * np.sin(theta),
            r * np.cos(phi),
        )
    )


# -------------------------------------------------------------------------------
# Shape families
# -------------------------------------------------------------------------------

SPHERE_RADIUS = 3.0
FIREWORKS_RADIUS = 4.0
HEART_SCALE = 0.1
HEART_JITTER = 0.25
FLOWER_PETALS = 4
FLOWER_RADIUS = 3.0
FLOWER_DEPTH = 1.5
SATURN_PLANET_RADIUS = 1.5
SATURN_PLANET_SHARE = 0.6
SATURN_RING_RADII = (3.0, 5.0)
SATURN_RING_THICKNESS = 0.1


def sphere(count, *, rng=None):
    return points_in_sphere(count, SPHERE_RADIUS, rng=rng)


def fireworks(count, *, rng=None):
    """An explosion from the center: a bigger ball."""
    return points_in_sphere(count, FIREWORKS_RADIUS, rng=rng)


def heart(count, *, rng=None):
    """
    The classic parametric heart curve, scattered for volume.
    The depth tapers with ``|ty|``, so the heart is thinner towards its tip.
    """
    rng = rng if rng is not None else np.random.default_rng()
    theta = _uniform(rng, 0, 2 * np.pi, count)
    tx = 16 * np.sin(theta) ** 3
    ty = (
        13 * np.cos(theta)
        - 5 * np.cos(2 * theta)
        - 2 * np.cos(3 * theta)
        - np.cos(4 * theta)
    )
    jitter = _uniform(rng, -HEART_JITTER, HEART_JITTER, (3, count))
    x = HEART_SCALE * tx + jitter[0]
    y = HEART_SCALE * ty + jitter[1]
    z = jitter[2] * (1 - np.abs(ty) / 20)
    return np.column_stack((x, y, z))


def flower(count, *, rng=None):
    """A rose curve with four petals, given some depth."""
    rng = rng if rng is not None else np.random.default_rng()
    theta = _uniform(rng, 0, 2 * np.pi, count)
    r = np.cos(FLOWER_PETALS * theta)
    phi = _uniform(rng, -np.pi / 2, np.pi / 2, count)
    return np.column_stack(
        (
            FLOWER_RADIUS * r * np.cos(theta),
            FLOWER_RADIUS * r * np.sin(theta),
            FLOWER_DEPTH * r * np.sin(phi),
        )
    )


def saturn(count, *, rng=None):
    """A planet (ball) inside a flat ring lying in the x-z plane."""
    rng = rng if rng is not None else np.random.default_rng()
    is_planet = rng.random(count) < SATURN_PLANET_SHARE
    out = np.empty((count, 3))

    n_planet = int(is_planet.sum())
    out[is_planet] = points_in_sphere(n_planet, SATURN_PLANET_RADIUS, rng=rng)

    n_ring = count - n_planet
    angle = _uniform(rng, 0, 2 * np.pi, n_ring)
    dist = _uniform(rng, *SATURN_RING_RADII, n_ring)
    out[~is_planet] = np.column_stack(
        (
            np.cos(angle) * dist,
            _uniform(rng, -SATURN_RING_THICKNESS, SATURN_RING_THICKNESS, n_ring),
            np.sin(angle) * dist,
        )
    )
    return out


# (upper bound of the cumulative probability, part)
MEDITATE_SECTIONS = ((0.2, 'head'), (0.6, 'torso'), (1.0, 'base'))


def meditate(count, *, rng=None):
    """
    A seated figure made of primitives: a small ball for the head, a stretched ball
    for the torso and a torus for the crossed legs.
    """
    rng = rng if rng is not None else np.random.default_rng()
    section = rng.random(count)
    head = section < MEDITATE_SECTIONS[0][0]
    torso = ~head & (section < MEDITATE_SECTIONS[1][0])
    base = ~head & ~torso
    out = np.empty((count, 3))

    head_points = points_in_sphere(int(head.sum()), 0.6, rng=rng)
    head_points[:, 1] += 1.8
    out[head] = head_points

    torso_points = points_in_sphere(int(torso.sum()), 1.2, rng=rng)
    out[torso] = torso_points * np.array([1.2, 1.5, 0.8])

    n_base = int(base.sum())
    ring_radius, tube_radius = 1.2, 0.5
    angle = _uniform(rng, 0, 2 * np.pi, n_base)
    tube_angle = _uniform(rng, 0, 2 * np.pi, n_base)
    ring = ring_radius + tube_radius * np.cos(tube_angle)
    out[base] = np.column_stack(
        (
            ring * np.cos(angle),
            tube_radius * np.sin(tube_angle) - 1.2,
            ring * np.sin(angle),
        )
    )
    return out


ShapeFunc = Callable[..., np.ndarray]

shape_funcs: Dict[ShapeDescriptor, ShapeFunc] = {
    ShapeDescriptor.HEART: heart,
    ShapeDescriptor.FLOWER: flower,
    ShapeDescriptor.SATURN: saturn,
    ShapeDescriptor.MEDITATE: meditate,
    ShapeDescriptor.FIREWORKS: fireworks,
    ShapeDescriptor.SPHERE: sphere,
}

# Radius bounding every point of the ball-shaped families
shape_radii = {
    ShapeDescriptor.SPHERE: SPHERE_RADIUS,
    ShapeDescriptor.FIREWORKS: FIREWORKS_RADIUS,
}


def generate(
    shape: Union[str, ShapeDescriptor, None] = DFLT_SHAPE,
    count: int = DFLT_PARTICLE_COUNT,
    *,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Generate ``count`` points of the given shape family, as a ``(count, 3)`` array.

    Unknown shapes give a sphere.

    >>> generate('Flower', 5).shape
    (5, 3)
    >>> generate('Dragon', 2, rng=np.random.default_rng(0)).shape
    (2, 3)
    """
    if count < 0:
        raise ValueError(f"count must be non-negative, was {count}")
    shape_func = shape_funcs[resolve_shape(shape)]
    return shape_func(count, rng=rng)
