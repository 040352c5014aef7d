"""Display utilities: drawing the particle cloud and its status with OpenCV."""

import math
import time
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from morphcloud.util import hex_to_bgr

# -------------------------------------------------------------------------------
# Types and defaults
# -------------------------------------------------------------------------------

Color = Union[str, Tuple[int, int, int], Tuple[int, int, int, int]]  # hex, BGR or BGRA

DFLT_COLOR = '#3b82f6'
DFLT_POINT_SIZE = 0.05  # in scene units
DFLT_WINDOW_SIZE = (960, 720)
DFLT_BACKGROUND = (5, 5, 5)
DFLT_OPACITY = 0.8
CAMERA_DISTANCE = 8.0
CAMERA_FOV = 60.0  # vertical, in degrees
NEAR_PLANE = 0.1


def to_bgr(color: Color):
    if isinstance(color, str):
        return hex_to_bgr(color)
    return tuple(color[:3])


# -------------------------------------------------------------------------------
# Particles
# -------------------------------------------------------------------------------


def project_points(
    positions: np.ndarray,
    rotation: float,
    *,
    width: int,
    height: int,
    camera_distance: float = CAMERA_DISTANCE,
    fov: float = CAMERA_FOV,
):
    """
    Perspective projection of ``(n, 3)`` positions, rotated by ``rotation`` radians
    around the vertical axis, seen from a camera on the z axis looking at the origin.

    Returns:
        tuple: (u, v, visible), pixel coordinates and a mask of the points in front of
        the camera.
    """
    c, s = math.cos(rotation), math.sin(rotation)
    x = positions[:, 0] * c + positions[:, 2] * s
    y = positions[:, 1]
    z = -positions[:, 0] * s + positions[:, 2] * c

    depth = camera_distance - z
    visible = depth > NEAR_PLANE
    depth = np.where(visible, depth, NEAR_PLANE)
    focal = (height / 2) / math.tan(math.radians(fov) / 2)
    u = width / 2 + focal * x / depth
    v = height / 2 - focal * y / depth
    return u, v, visible


def draw_particles(
    img: np.ndarray,
    positions: np.ndarray,
    rotation: float = 0.0,
    *,
    color: Color = DFLT_COLOR,
    point_size: float = DFLT_POINT_SIZE,
    opacity: float = DFLT_OPACITY,
):
    """
    Draw the particles on ``img`` (in place), blending additively, so that dense
    regions glow.

    Args:
        img: BGR image to draw on
        positions: ``(n, 3)`` array (a flat ``3 * n`` buffer is reshaped)
        rotation: Rotation of the whole cloud around the vertical axis, in radians
        color: Particle color
        point_size: Size of a particle, in scene units
        opacity: Contribution of a single particle to its pixel, from 0 to 1

    Returns:
        img: The image with the particles drawn
    """
    h, w = img.shape[:2]
    positions = np.asarray(positions).reshape(-1, 3)
    u, v, visible = project_points(positions, rotation, width=w, height=h)
    u = np.round(u[visible]).astype(int)
    v = np.round(v[visible]).astype(int)
    inside = (u >= 0) & (u < w) & (v >= 0) & (v < h)

    density = np.zeros((h, w), dtype=np.float32)
    np.add.at(density, (v[inside], u[inside]), opacity)

    focal = (h / 2) / math.tan(math.radians(CAMERA_FOV) / 2)
    radius = int(round(focal * point_size / CAMERA_DISTANCE))
    if radius > 1:
        kernel = cv2.getStructuringElement(
            cv2.MORPH_ELLIPSE, (2 * radius - 1, 2 * radius - 1)
        )
        density = cv2.dilate(density, kernel)

    glow = np.clip(density, 0, 1)[..., None] * np.array(to_bgr(color), np.float32)
    np.clip(img.astype(np.float32) + glow, 0, 255, out=glow)
    img[...] = glow.astype(np.uint8)
    return img


# -------------------------------------------------------------------------------
# Status
# -------------------------------------------------------------------------------


def display_features_on_image(
    img: np.ndarray,
    features: dict,
    *,
    font=cv2.FONT_HERSHEY_SIMPLEX,
    font_scale: float = 0.6,
    color: Color = (230, 230, 230),
    thickness: int = 1,
    float_format: str = ".2f",
    x_pos=10,
    y_pos=25,
    y_increment=24,
    bg_color: Color = (40, 40, 40, 160),  # dark grey, semi-transparent (BGR + alpha)
):
    """
    Write ``key: value`` lines on the image, over a semi-transparent background.

    Args:
        img: The image to draw on
        features: Dictionary of the values to show
        font: Font type to use
        font_scale: Size of the font
        color: Text color
        thickness: Line thickness of text
        float_format: Format string for float values
        x_pos: Starting x position for text
        y_pos: Starting y position for text
        y_increment: Vertical space between lines
        bg_color: Background color (BGR + alpha) where alpha is 0-255
    """
    if not features:
        return img

    lines = [
        f"{key}: {value:{float_format}}" if isinstance(value, float) else f"{key}: {value}"
        for key, value in features.items()
    ]

    if len(bg_color) == 4:
        alpha = bg_color[3] / 255.0
    else:
        alpha = 0.5
    overlay = img.copy()
    padding = 5
    for idx, text in enumerate(lines):
        (text_width, text_height), _ = cv2.getTextSize(text, font, font_scale, thickness)
        y = y_pos + idx * y_increment
        cv2.rectangle(
            overlay,
            (x_pos - padding, y - text_height - padding),
            (x_pos + text_width + padding, y + padding),
            to_bgr(bg_color),
            -1,
        )
    cv2.addWeighted(overlay, alpha, img, 1 - alpha, 0, img)

    for idx, text in enumerate(lines):
        cv2.putText(
            img,
            text,
            (x_pos, y_pos + idx * y_increment),
            font,
            font_scale,
            to_bgr(color),
            thickness,
            cv2.LINE_AA,
        )
    return img


def status_features(state, *, session_state: str = 'idle', now: Optional[float] = None):
    """
    The values shown in the status overlay, for a ``ControlState``.

    >>> from morphcloud.control import ControlState
    >>> status_features(ControlState(updated_at=100.0), session_state='open', now=101.5)
    {'session': 'open', 'shape': 'Heart', 'expansion': 0.8, 'tension': 0.0, 'last update': '1.5s ago'}
    """
    now = time.time() if now is None else now
    if state.updated_at:
        last_update = f"{now - state.updated_at:.1f}s ago"
    else:
        last_update = 'never'
    return {
        'session': session_state,
        'shape': state.shape.value,
        'expansion': state.expansion,
        'tension': state.tension,
        'last update': last_update,
    }


def render_frame(
    positions: np.ndarray,
    rotation: float = 0.0,
    *,
    size=DFLT_WINDOW_SIZE,
    background=DFLT_BACKGROUND,
    color: Color = DFLT_COLOR,
    point_size: float = DFLT_POINT_SIZE,
    status: Optional[dict] = None,
):
    """A new image with the particles, and the status (if given) written over them."""
    width, height = size
    img = np.empty((height, width, 3), dtype=np.uint8)
    img[...] = to_bgr(background)
    draw_particles(img, positions, rotation, color=color, point_size=point_size)
    if status:
        display_features_on_image(img, status)
    return img
