"""

A cloud of particles that you shape with your hands.

The camera and microphone are streamed to a multimodal model (the Gemini Live API)
which watches your hands and, a few times per second, calls back a single function,
``updateParticleControl``, with two numbers:

* expansion: how far apart your hands are (0: touching, 1: arms wide), which scales
  the cloud
* tension: how energetic your movements are (0: still, 1: shaking), which makes the
  cloud vibrate and spin faster

and, if you asked for one, a shape: Heart, Flower, Saturn, Meditate, Fireworks or
Sphere.

Those irregular updates land in a ``ControlChannel``; at every frame, a
``MorphAnimator`` moves each particle a little closer to its target, so the cloud
morphs smoothly whatever the frame rate and however often the updates come.

Here's what's where:

* shapes.py: procedural point clouds for each shape family
* morph.py: the particle field and the frame by frame morphing
* control.py: control samples, the channel, and parsing function call arguments
* session.py: the streaming session (state machine, audio and video producers,
    acknowledging calls, teardown)
* live.py: the Gemini Live API link
* codec.py and devices.py: media encoding, camera and microphone
* display.py: drawing the cloud with OpenCV
* script_utils.py: the app (controller and render loop); see bin/morphcloud_cli.py

"""

from morphcloud.control import (
    ControlChannel,
    ControlSample,
    ControlState,
    ProtocolError,
    parse_control_args,
)
from morphcloud.morph import MorphAnimator, ParticleField
from morphcloud.shapes import ShapeDescriptor, generate, resolve_shape
