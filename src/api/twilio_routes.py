"""Twilio Media Streams WebSocket entry point.

Every WebSocket path lands here so that the gate, not the router, decides
between 401 and 404. The route must be registered after all other
WebSocket routes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket

from api.dependencies import get_dispatcher
from relay.dispatcher import RelayDispatcher

router = APIRouter(tags=["twilio"])


@router.websocket("/{stream_path:path}")
async def twilio_media_stream(
    websocket: WebSocket,
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> None:
    await dispatcher.handle(websocket)
