"""Utils for morphcloud."""

import time

def return_none(*args, **kwargs):
    """
    An empty function that returns None no matter the arguments.
    Often used as a "do nothing" general callback function.
    """
    return None


# --------------------------------------------------------------------------------------
# Errors


class MorphcloudError(Exception):
    """Base class of the errors raised by morphcloud."""


# --------------------------------------------------------------------------------------
# Numbers


def clamp(value, low=0.0, high=1.0):
    """
    Clamp ``value`` to the closed interval ``[low, high]``.

    >>> clamp(1.7)
    1.0
    >>> clamp(-3, -1, 1)
    -1
    >>> clamp(0.25)
    0.25
    """
    return max(low, min(high, value))


# --------------------------------------------------------------------------------------
# String utils


def format_milliseconds_time(timestamp):
    """Format a ``time.time()`` timestamp as ``HH:MM:SS.mmm``, in local time."""
    formatted_time = time.strftime('%H:%M:%S', time.localtime(timestamp))
    milliseconds = int((timestamp % 1) * 1000)
    return f"{formatted_time}.{milliseconds:03d}"


def hex_to_bgr(color: str):
    """
    Convert a ``#rrggbb`` (or ``rrggbb``, or ``#rgb``) color to an OpenCV BGR tuple.

    >>> hex_to_bgr('#3b82f6')
    (246, 130, 59)
    >>> hex_to_bgr('fff')
    (255, 255, 255)
    """
    color = color.strip().lstrip('#')
    if len(color) == 3:
        color = ''.join(c * 2 for c in color)
    if len(color) != 6:
        raise ValueError(f"Not a hex color: {color!r}")
    r, g, b = (int(color[i : i + 2], 16) for i in (0, 2, 4))
    return (b, g, r)
