"""Per-call relay between a Twilio media stream and an OpenAI Realtime session.

Each session owns two legs and runs one reader task per leg. Whichever
reader finishes first (stop signal, close or error) triggers teardown, which
closes both legs so neither outlives the other.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from integrations.openai_realtime import (
    ErrorEvent,
    InputAudioBufferAppendEvent,
    InputAudioBufferCommitEvent,
    ResponseAudioDeltaEvent,
    ResponseDoneEvent,
    build_session_update,
    encode_realtime_event,
    parse_realtime_event,
)
from integrations.twilio_streaming import (
    MarkMessage,
    MediaEvent,
    MediaMessage,
    OutboundMark,
    OutboundMedia,
    StartEvent,
    StopEvent,
    encode_twilio_message,
    parse_twilio_ws_message,
)
from relay.errors import MessageParseError, PeerClosedError, PeerError, TranscodeError, UpstreamConnectError
from relay.legs import Leg
from relay.personas import Route
from telephony.g711 import pcm16_to_ulaw, ulaw_to_pcm16

LOGGER = logging.getLogger(__name__)

UpstreamConnector = Callable[[], Awaitable[Leg]]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise MessageParseError(f"Audio payload is not valid base64: {exc}") from exc


def _b64encode(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


class RelaySession:
    def __init__(
        self,
        downstream: Leg,
        *,
        route: Route,
        connect_upstream: UpstreamConnector,
        connect_timeout: float,
        temperature: float,
    ) -> None:
        self.route = route
        self.persona = route.persona
        self.state = SessionState.CONNECTING
        self.stream_sid: str | None = None

        self._downstream = downstream
        self._upstream: Leg | None = None
        self._connect_upstream = connect_upstream
        self._connect_timeout = connect_timeout
        self._temperature = temperature

        self._commit_sent = False
        self._pending_audio = False
        self._mark_seq = 0

    @property
    def upstream_open(self) -> bool:
        return self._upstream is not None and self._upstream.is_open

    async def run(self) -> None:
        """Drive the session from CONNECTING to CLOSED."""

        try:
            upstream = await asyncio.wait_for(self._connect_upstream(), self._connect_timeout)
        except (UpstreamConnectError, TimeoutError) as exc:
            LOGGER.error(
                "Failed to establish realtime connection on %s: %s",
                self.route.path,
                str(exc) or "timed out",
            )
            await self._downstream.close()
            self.state = SessionState.CLOSED
            return
        self._upstream = upstream

        readers: list[asyncio.Task[None]] = []
        try:
            update = build_session_update(self.persona, temperature=self._temperature)
            await upstream.send(encode_realtime_event(update))
            self.state = SessionState.ACTIVE

            readers = [
                asyncio.create_task(self._read_downstream(), name=f"relay-downstream:{self.route.path}"),
                asyncio.create_task(self._read_upstream(upstream), name=f"relay-upstream:{self.route.path}"),
            ]
            await asyncio.wait(readers, return_when=asyncio.FIRST_COMPLETED)
        except (PeerClosedError, PeerError) as exc:
            LOGGER.warning("Realtime leg failed during session setup: %s", exc)
        finally:
            await self._teardown()
            for task in readers:
                task.cancel()
            results = await asyncio.gather(*readers, return_exceptions=True)
            for task, result in zip(readers, results):
                # CancelledError is a BaseException and is expected here.
                if isinstance(result, Exception):
                    LOGGER.error("Reader %s failed", task.get_name(), exc_info=result)

    async def _read_downstream(self) -> None:
        try:
            while self.state is SessionState.ACTIVE:
                raw = await self._downstream.receive()
                if self.state is not SessionState.ACTIVE:
                    return
                try:
                    event = parse_twilio_ws_message(raw)
                except MessageParseError as exc:
                    LOGGER.warning("Dropping malformed Twilio message: %s", exc.detail)
                    continue

                if isinstance(event, StartEvent):
                    self._on_start(event)
                elif isinstance(event, MediaEvent):
                    await self._on_media(event)
                elif isinstance(event, StopEvent):
                    LOGGER.info("Stream stopped (streamSid=%s)", self.stream_sid)
                    await self._flush_input()
                    self.state = SessionState.CLOSING
                    return
        except PeerClosedError as exc:
            LOGGER.info("Twilio connection closed: %s", exc.detail)
        except PeerError as exc:
            LOGGER.warning("Twilio connection error: %s", exc.detail)

    async def _read_upstream(self, upstream: Leg) -> None:
        try:
            while self.state is SessionState.ACTIVE:
                raw = await upstream.receive()
                if self.state is not SessionState.ACTIVE:
                    return
                try:
                    event = parse_realtime_event(raw)
                except MessageParseError as exc:
                    LOGGER.warning("Dropping malformed realtime message: %s", exc.detail)
                    continue

                if isinstance(event, ResponseAudioDeltaEvent):
                    await self._on_audio_delta(event)
                elif isinstance(event, ResponseDoneEvent):
                    await self._on_response_done()
                elif isinstance(event, ErrorEvent):
                    LOGGER.warning("Realtime API reported an error: %s", event.error)
        except PeerClosedError as exc:
            LOGGER.info("OpenAI connection closed: %s", exc.detail)
        except PeerError as exc:
            LOGGER.warning("OpenAI connection error: %s", exc.detail)

    async def _send_upstream(self, message: str) -> bool:
        """Send to the realtime leg; a failed send ends the session."""

        upstream = self._upstream
        if upstream is None or not upstream.is_open:
            return False
        try:
            await upstream.send(message)
        except PeerClosedError as exc:
            LOGGER.info("OpenAI connection closed: %s", exc.detail)
        except PeerError as exc:
            LOGGER.warning("OpenAI connection error: %s", exc.detail)
        else:
            return True
        if self.state is SessionState.ACTIVE:
            self.state = SessionState.CLOSING
        return False

    def _on_start(self, event: StartEvent) -> None:
        if self.stream_sid is not None:
            LOGGER.debug("Ignoring repeated start for streamSid=%s", self.stream_sid)
            return
        self.stream_sid = event.start.stream_sid
        LOGGER.info("Stream started: %s (callSid=%s)", self.stream_sid, event.start.call_sid)

    async def _on_media(self, event: MediaEvent) -> None:
        if event.media.track and event.media.track != "inbound":
            return
        if not self.upstream_open:
            return
        try:
            pcm = ulaw_to_pcm16(_b64decode(event.media.payload))
        except (MessageParseError, TranscodeError) as exc:
            LOGGER.warning("Dropping inbound audio frame: %s", exc.detail)
            return

        append = InputAudioBufferAppendEvent(audio=_b64encode(pcm))
        if await self._send_upstream(encode_realtime_event(append)):
            self._pending_audio = True

    async def _on_audio_delta(self, event: ResponseAudioDeltaEvent) -> None:
        if not self._downstream.is_open:
            return
        try:
            ulaw = pcm16_to_ulaw(_b64decode(event.delta))
        except (MessageParseError, TranscodeError) as exc:
            LOGGER.warning("Dropping outbound audio delta: %s", exc.detail)
            return

        message = MediaMessage(stream_sid=self.stream_sid, media=OutboundMedia(payload=_b64encode(ulaw)))
        await self._downstream.send(encode_twilio_message(message))

    async def _on_response_done(self) -> None:
        if not self._downstream.is_open:
            return
        self._mark_seq += 1
        name = f"response_{int(time.time() * 1000)}_{self._mark_seq}"
        message = MarkMessage(stream_sid=self.stream_sid, mark=OutboundMark(name=name))
        await self._downstream.send(encode_twilio_message(message))

    async def _flush_input(self) -> None:
        if self._commit_sent or not self.upstream_open:
            return
        self._commit_sent = True
        self._pending_audio = False
        await self._send_upstream(encode_realtime_event(InputAudioBufferCommitEvent()))

    async def _teardown(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSING

        if self._pending_audio:
            await self._flush_input()

        await self._downstream.close()
        if self._upstream is not None:
            await self._upstream.close()

        self.state = SessionState.CLOSED
        LOGGER.info("Session closed on %s (streamSid=%s)", self.route.path, self.stream_sid)
