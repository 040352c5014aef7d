#!/usr/bin/env python
"""
Command-line interface for the gesture controlled particle cloud.

Examples:
    # Run with default settings (a heart, connect with the 'c' key)
    python morphcloud_cli.py

    # Start as Saturn, in pink, and connect to the recognizer right away
    python morphcloud_cli.py --shape saturn --color '#ec4899' --connect

    # Print every control update received
    python morphcloud_cli.py --connect --log-control

    # Clamp out-of-range control values instead of dropping them
    python morphcloud_cli.py --range-policy clamp
"""

import logging

import argh

from morphcloud.script_utils import (
    ParticleController,
    print_json_if_possible,
    run_particles,
)


def main(
    # Particles
    shape: str = "Heart",
    color: str = "#3b82f6",
    count: int = 8000,
    # Devices
    camera: int = 0,
    microphone: str = None,
    # Recognizer
    connect: bool = False,
    api_key: str = None,
    model: str = "gemini-2.5-flash-native-audio-preview-09-2025",
    range_policy: str = "reject",
    # Logging options
    log_control: bool = False,
    log_level: str = "WARNING",
    # Display options
    window_name: str = "Gesture Controlled Particles",
    no_status: bool = False,
    # List available shapes
    list_shapes: bool = False,
):
    """
    Run the particle cloud with the specified parameters.

    Args:
        shape: Initial shape
        color: Particle color, as hex
        count: Number of particles
        camera: Camera device index
        microphone: Microphone device (index or name), default input if not given
        connect: Connect to the recognizer at startup
        api_key: Gemini API key (default: GEMINI_API_KEY or GOOGLE_API_KEY)
        model: Live API model
        range_policy: What to do with out-of-range control values (reject or clamp)
        log_control: Whether to print each control update
        log_level: Logging level
        window_name: Title for the display window
        no_status: Don't write the status over the particles
        list_shapes: List available shapes and exit
    """
    # Import here to avoid loading everything if just listing shapes
    from morphcloud.shapes import SHAPE_NAMES, resolve_shape

    if list_shapes:
        print("Available shapes:")
        for name in SHAPE_NAMES:
            print(f"  - {name}")
        return

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if microphone is not None and microphone.isdigit():
        microphone = int(microphone)

    controller = ParticleController(
        api_key=api_key,
        shape=resolve_shape(shape),
        color=color,
        camera=camera,
        microphone=microphone,
        model=model,
        range_policy=range_policy,
    )

    run_particles(
        controller=controller,
        count=count,
        window_name=window_name,
        connect=connect,
        log_control=print_json_if_possible if log_control else None,
        show_status=not no_status,
    )


if __name__ == "__main__":
    argh.dispatch_command(main)
