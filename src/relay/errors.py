"""Relay error taxonomy.

Gate rejections carry the HTTP status used for the denial response. Every
other error is handled inside a session and never reaches the network.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class AuthRejectedError(RelayError):
    status_code = 401
    default_detail = "Unauthorized"


class RouteNotFoundError(RelayError):
    status_code = 404
    default_detail = "Not Found"


class UpstreamConnectError(RelayError):
    status_code = 502
    default_detail = "Realtime connection failed."


class MessageParseError(RelayError):
    status_code = 400
    default_detail = "Malformed message."


class TranscodeError(RelayError):
    status_code = 400
    default_detail = "Malformed audio payload."


class PeerClosedError(RelayError):
    default_detail = "Peer closed the connection."


class PeerError(RelayError):
    default_detail = "Connection failed."
