"""Process-wide entry point that turns accepted stream upgrades into sessions."""

from __future__ import annotations

import logging
from functools import partial

from fastapi import Response, WebSocket, status

from config.settings import Settings
from integrations.openai_realtime import connect_realtime
from integrations.twilio_streaming import TwilioLeg
from relay.errors import AuthRejectedError, RouteNotFoundError
from relay.gate import RouteGate
from relay.personas import build_routes
from relay.session import RelaySession, UpstreamConnector

LOGGER = logging.getLogger(__name__)


class RelayDispatcher:
    """Accepts Twilio stream connections and hands each one to a RelaySession.

    Only read-only configuration is shared between sessions. The dispatcher
    keeps a set of live sessions for reporting and nothing else.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        gate: RouteGate | None = None,
        connect_upstream: UpstreamConnector | None = None,
    ) -> None:
        self._settings = settings
        self._gate = gate or RouteGate(
            settings.stream_shared_secret.get_secret_value(),
            build_routes(booking_url=settings.booking_link_url),
        )
        self._connect_upstream = connect_upstream or partial(connect_realtime, settings)
        self._sessions: set[RelaySession] = set()

    @property
    def routes(self) -> list[str]:
        return self._gate.paths

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def handle(self, websocket: WebSocket) -> None:
        path = websocket.url.path
        try:
            route = self._gate.authorize(path, websocket.query_params.get("token"))
        except (AuthRejectedError, RouteNotFoundError) as exc:
            LOGGER.warning("Rejected stream upgrade on %s: %s", path, exc.detail)
            await _deny(websocket, exc.status_code)
            return

        await websocket.accept()
        LOGGER.info("New connection on %s (%s voice)", route.path, route.persona.voice)

        session = RelaySession(
            TwilioLeg(websocket),
            route=route,
            connect_upstream=self._connect_upstream,
            connect_timeout=self._settings.upstream_connect_timeout_seconds,
            temperature=self._settings.realtime_temperature,
        )
        self._sessions.add(session)
        try:
            await session.run()
        finally:
            self._sessions.discard(session)


async def _deny(websocket: WebSocket, status_code: int) -> None:
    # Without the denial-response extension the best the server can do is refuse the handshake.
    if "websocket.http.response" in (websocket.scope.get("extensions") or {}):
        await websocket.send_denial_response(Response(status_code=status_code))
    else:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
