"""OpenAI Realtime API wire format, session configuration and client leg."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from config.settings import Settings
from relay.errors import MessageParseError, PeerClosedError, PeerError, UpstreamConnectError
from relay.personas import PersonaConfig

LOGGER = logging.getLogger(__name__)

AUDIO_FORMAT = "pcm16"


class TurnDetection(BaseModel):
    type: Literal["server_vad"] = "server_vad"


class RealtimeSessionConfig(BaseModel):
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    input_audio_format: str = AUDIO_FORMAT
    output_audio_format: str = AUDIO_FORMAT
    voice: str
    instructions: str
    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    temperature: float = 0.8


class SessionUpdateEvent(BaseModel):
    type: Literal["session.update"] = "session.update"
    session: RealtimeSessionConfig


class InputAudioBufferAppendEvent(BaseModel):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str = Field(description="Base64-encoded PCM16 audio.")


class InputAudioBufferCommitEvent(BaseModel):
    type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class ResponseAudioDeltaEvent(BaseModel):
    type: Literal["response.audio.delta"]
    delta: str = Field(min_length=1)
    response_id: str | None = None
    item_id: str | None = None


class ResponseDoneEvent(BaseModel):
    type: Literal["response.done"]


class ErrorEvent(BaseModel):
    type: Literal["error"]
    error: dict[str, Any] = Field(default_factory=dict)


RealtimeServerEvent = Annotated[
    ResponseAudioDeltaEvent | ResponseDoneEvent | ErrorEvent,
    Field(discriminator="type"),
]

_SERVER_ADAPTER: TypeAdapter[RealtimeServerEvent] = TypeAdapter(RealtimeServerEvent)
_SERVER_EVENTS = frozenset({"response.audio.delta", "response.done", "error"})


def build_session_update(persona: PersonaConfig, *, temperature: float) -> SessionUpdateEvent:
    return SessionUpdateEvent(
        session=RealtimeSessionConfig(
            voice=persona.voice,
            instructions=persona.instructions,
            temperature=temperature,
        )
    )


def encode_realtime_event(
    event: SessionUpdateEvent | InputAudioBufferAppendEvent | InputAudioBufferCommitEvent,
) -> str:
    return event.model_dump_json()


def parse_realtime_event(
    text: str,
) -> ResponseAudioDeltaEvent | ResponseDoneEvent | ErrorEvent | None:
    """Parse one server event; ``None`` for types the relay ignores.

    Raises:
        MessageParseError: if the frame is not JSON or does not match its type's schema.
    """

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MessageParseError(f"Realtime frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MessageParseError("Realtime frame is not a JSON object")
    if data.get("type") not in _SERVER_EVENTS:
        return None

    try:
        return _SERVER_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise MessageParseError(f"Invalid realtime {data['type']} event: {exc}") from exc


class RealtimeLeg:
    """Upstream leg backed by a ``websockets`` client connection."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def receive(self) -> str:
        try:
            message = await self._connection.recv()
        except ConnectionClosedOK as exc:
            raise PeerClosedError(f"Realtime connection closed: {exc}") from exc
        except ConnectionClosed as exc:
            raise PeerError(f"Realtime connection lost: {exc}") from exc

        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def send(self, message: str) -> None:
        try:
            await self._connection.send(message)
        except ConnectionClosedOK as exc:
            raise PeerClosedError(f"Realtime connection closed: {exc}") from exc
        except ConnectionClosed as exc:
            raise PeerError(f"Realtime connection lost: {exc}") from exc

    async def close(self) -> None:
        await self._connection.close()


async def connect_realtime(settings: Settings) -> RealtimeLeg:
    """Open the OpenAI Realtime WebSocket for one call.

    Raises:
        UpstreamConnectError: if the handshake fails or the host is unreachable.
    """

    url = f"{settings.openai_realtime_url}?model={settings.openai_model_realtime}"
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key.get_secret_value()}",
        "OpenAI-Beta": "realtime=v1",
    }

    try:
        connection = await connect(url, additional_headers=headers, max_size=None)
    except (OSError, TimeoutError, WebSocketException) as exc:
        raise UpstreamConnectError(f"Cannot reach {settings.openai_realtime_url}: {exc}") from exc

    LOGGER.info("OpenAI Realtime connection established (model=%s)", settings.openai_model_realtime)
    return RealtimeLeg(connection)
