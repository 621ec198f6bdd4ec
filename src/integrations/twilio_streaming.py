"""Twilio Media Streams wire format and the downstream connection adapter.

Twilio sends JSON text frames tagged by ``event``. Only ``start``, ``media``
and ``stop`` matter to the relay; ``connected``, ``mark``, ``dtmf`` and any
future kinds parse to ``None`` and are ignored by the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from starlette.websockets import WebSocketState

from relay.errors import MessageParseError, PeerClosedError, PeerError

LOGGER = logging.getLogger(__name__)


class _TwilioModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartPayload(_TwilioModel):
    stream_sid: str = Field(alias="streamSid", min_length=1)
    call_sid: str | None = Field(default=None, alias="callSid")
    custom_parameters: dict[str, Any] = Field(default_factory=dict, alias="customParameters")


class MediaPayload(_TwilioModel):
    payload: str = Field(min_length=1)
    track: str | None = None


class StartEvent(_TwilioModel):
    event: Literal["start"]
    start: StartPayload


class MediaEvent(_TwilioModel):
    event: Literal["media"]
    media: MediaPayload


class StopEvent(_TwilioModel):
    event: Literal["stop"]


TwilioInboundEvent = Annotated[StartEvent | MediaEvent | StopEvent, Field(discriminator="event")]

_INBOUND_ADAPTER: TypeAdapter[TwilioInboundEvent] = TypeAdapter(TwilioInboundEvent)
_INBOUND_EVENTS = frozenset({"start", "media", "stop"})


class OutboundMedia(_TwilioModel):
    payload: str


class OutboundMark(_TwilioModel):
    name: str


class MediaMessage(_TwilioModel):
    event: Literal["media"] = "media"
    stream_sid: str | None = Field(default=None, alias="streamSid")
    media: OutboundMedia


class MarkMessage(_TwilioModel):
    event: Literal["mark"] = "mark"
    stream_sid: str | None = Field(default=None, alias="streamSid")
    mark: OutboundMark


def parse_twilio_ws_message(text: str) -> StartEvent | MediaEvent | StopEvent | None:
    """Parse one inbound Twilio frame.

    Returns ``None`` for event kinds the relay does not act on.

    Raises:
        MessageParseError: if the frame is not JSON or does not match its event schema.
    """

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MessageParseError(f"Twilio frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MessageParseError("Twilio frame is not a JSON object")
    if data.get("event") not in _INBOUND_EVENTS:
        return None

    try:
        return _INBOUND_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise MessageParseError(f"Invalid Twilio {data['event']} event: {exc}") from exc


def encode_twilio_message(message: MediaMessage | MarkMessage) -> str:
    # Before ``start`` there is no stream identifier; Twilio expects the key omitted.
    return message.model_dump_json(by_alias=True, exclude_none=True)


class TwilioLeg:
    """Downstream leg backed by the accepted Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def receive(self) -> str:
        try:
            message = await self._websocket.receive()
        except (RuntimeError, OSError) as exc:
            raise PeerError(f"Twilio receive failed: {exc}") from exc

        if message["type"] == "websocket.disconnect":
            raise PeerClosedError(f"Twilio closed the stream (code={message.get('code')})")

        text = message.get("text")
        if text is None:
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        return text

    async def send(self, message: str) -> None:
        try:
            await self._websocket.send_text(message)
        except WebSocketDisconnect as exc:
            raise PeerClosedError(f"Twilio closed the stream (code={exc.code})") from exc
        except (RuntimeError, OSError) as exc:
            raise PeerError(f"Twilio send failed: {exc}") from exc

    async def close(self) -> None:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.close()
        except (RuntimeError, OSError, WebSocketDisconnect) as exc:
            LOGGER.debug("Twilio stream already gone while closing: %s", exc)
