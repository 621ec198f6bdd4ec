"""Connection-handle abstraction shared by both sides of a relay session."""

from __future__ import annotations

from typing import Protocol


class Leg(Protocol):
    """One WebSocket connection owned by a session.

    Adapters translate their library's exceptions so that ``receive`` and
    ``send`` only raise ``PeerClosedError`` (orderly close) or ``PeerError``
    (transport failure). ``close`` must be safe to call repeatedly.
    """

    @property
    def is_open(self) -> bool: ...

    async def receive(self) -> str: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...
