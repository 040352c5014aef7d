"""The link to the remote gesture recognizer: a Gemini Live API session.

The recognizer watches the media we stream to it and, instead of answering in words,
calls the ``updateParticleControl`` function we declare, over and over. Each call has
to be answered (acknowledged): the model stops calling until it gets its response.

A link has four coroutine methods, which is all ``StreamingSession`` relies on:

* ``send_media(chunk)``: send a ``MediaChunk``
* ``send_ack(call)``: answer a ``FunctionCall``
* ``calls()``: async iterator of the inbound ``FunctionCall``s, ending when the
  remote closes the connection
* ``close()``
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

from google import genai
from google.genai import errors, types
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from morphcloud.codec import MediaChunk
from morphcloud.control import CONTROL_FUNCTION_NAME
from morphcloud.shapes import SHAPE_NAMES
from morphcloud.util import MorphcloudError

logger = logging.getLogger(__name__)

DFLT_MODEL = 'gemini-2.5-flash-native-audio-preview-09-2025'
ACK_RESPONSE = {'result': 'ok'}

SYSTEM_INSTRUCTION = """
You are a high-speed motion capture engine.
Your only job is to analyze the video stream and control the 3D particles.

Operational rules:
1. Visual priority: ignore audio unless it is a specific command (e.g. "change shape").
2. Game loop: call the 'updateParticleControl' tool continuously,
   about every 100 to 200 ms. Do not stop.
3. Silence: do not speak, do not reply with text or audio. Only call the tool.

Gesture mapping:
- expansion (0.0 to 1.0): hands touching or fists closed = 0.0,
  hands shoulder width apart = 0.5, arms fully extended = 1.0.
- tension (0.0 to 1.0): smooth, slow, floating movement = 0.0,
  fast, jerky, energetic movement = 1.0.

If you see no hands, keep the last known state or default to expansion 0.5 and
tension 0.0. React instantly to movement.
"""

_TRANSPORT_ERRORS = (WebSocketException, OSError, errors.APIError)


class TransportError(MorphcloudError):
    """Connecting to, sending to, or receiving from the remote failed."""


@dataclass(frozen=True)
class FunctionCall:
    id: Optional[str]
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


# -------------------------------------------------------------------------------
# Session configuration
# -------------------------------------------------------------------------------


def control_function_declaration() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=CONTROL_FUNCTION_NAME,
        description=(
            'Updates the particle system based on hand gestures. '
            'Call this continuously.'
        ),
        parameters=types.Schema(
            type=types.Type.OBJECT,
            properties={
                'expansion': types.Schema(
                    type=types.Type.NUMBER,
                    description=(
                        'Distance between hands. '
                        '0.0 (touching) to 1.0 (arms wide).'
                    ),
                ),
                'tension': types.Schema(
                    type=types.Type.NUMBER,
                    description=(
                        'Movement energy. '
                        '0.0 (still/slow) to 1.0 (shaking/fast).'
                    ),
                ),
                'shape': types.Schema(
                    type=types.Type.STRING,
                    description=(
                        'Only set if the user asks for a shape: '
                        + ', '.join(SHAPE_NAMES)
                        + '.'
                    ),
                    enum=list(SHAPE_NAMES),
                ),
            },
            required=['expansion', 'tension'],
        ),
    )


def live_connect_config(
    *, system_instruction: str = SYSTEM_INSTRUCTION
) -> types.LiveConnectConfig:
    return types.LiveConnectConfig(
        response_modalities=[types.Modality.AUDIO],
        tools=[types.Tool(function_declarations=[control_function_declaration()])],
        system_instruction=system_instruction,
    )


# -------------------------------------------------------------------------------
# Link
# -------------------------------------------------------------------------------


class GeminiLiveLink:
    """An open Live API session. Made by ``GeminiLiveConnector.open``."""

    def __init__(self, session, exit_stack: AsyncExitStack):
        self._session = session
        self._exit_stack = exit_stack

    async def send_media(self, chunk: MediaChunk):
        # The SDK base64-encodes blob data when serializing the message
        blob = types.Blob(data=chunk.data, mime_type=chunk.mime_type)
        try:
            if chunk.mime_type.startswith('audio/'):
                await self._session.send_realtime_input(audio=blob)
            else:
                await self._session.send_realtime_input(video=blob)
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to send {chunk.mime_type} chunk: {e}") from e

    async def send_ack(self, call: FunctionCall):
        response = types.FunctionResponse(
            id=call.id, name=call.name, response=dict(ACK_RESPONSE)
        )
        try:
            await self._session.send_tool_response(function_responses=[response])
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to acknowledge call {call.id}: {e}") from e

    async def calls(self) -> AsyncIterator[FunctionCall]:
        try:
            while True:
                # receive() stops at the end of each model turn, so we keep asking
                # until a turn comes back empty, which means the connection is gone
                got_message = False
                async for message in self._session.receive():
                    got_message = True
                    if message.go_away is not None:
                        logger.warning("Remote is going away: %s", message.go_away)
                    if message.tool_call is None:
                        continue
                    for fc in message.tool_call.function_calls or ():
                        yield FunctionCall(id=fc.id, name=fc.name, args=dict(fc.args or {}))
                if not got_message:
                    return
        except ConnectionClosedOK:
            return
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Receiving from the remote failed: {e}") from e

    async def close(self):
        await self._exit_stack.aclose()


class GeminiLiveConnector:
    """
    Opens ``GeminiLiveLink``s.

    Args:
        api_key: Gemini API key
        model: Name of the Live API model
        config: The ``LiveConnectConfig``; by default, declares the control function
        client: A ``genai.Client`` to use instead of making one from ``api_key``
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = DFLT_MODEL,
        config: Optional[types.LiveConnectConfig] = None,
        client: Optional[genai.Client] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.config = config if config is not None else live_connect_config()
        self._client = client

    async def open(self) -> GeminiLiveLink:
        exit_stack = AsyncExitStack()
        try:
            client = self._client or genai.Client(api_key=self.api_key)
            session = await exit_stack.enter_async_context(
                client.aio.live.connect(model=self.model, config=self.config)
            )
        except (ValueError,) + _TRANSPORT_ERRORS as e:
            await exit_stack.aclose()
            raise TransportError(f"Could not connect to {self.model}: {e}") from e
        except asyncio.CancelledError:
            await exit_stack.aclose()
            raise
        logger.info("Connected to %s", self.model)
        return GeminiLiveLink(session, exit_stack)
