"""Upgrade-time credential and route check."""

from __future__ import annotations

import secrets
from collections.abc import Mapping

from relay.errors import AuthRejectedError, RouteNotFoundError
from relay.personas import Route


class RouteGate:
    """Decides whether an upgrade request may become a relay session.

    The credential is checked before the path, so a caller without the shared
    secret cannot probe which routes exist.
    """

    def __init__(self, shared_secret: str, routes: Mapping[str, Route]) -> None:
        if not shared_secret:
            raise ValueError("shared secret must not be empty")
        self._secret = shared_secret.encode("utf-8")
        self._routes = routes

    @property
    def paths(self) -> list[str]:
        return list(self._routes)

    def authorize(self, path: str, token: str | None) -> Route:
        """Return the route for an accepted request.

        Raises:
            AuthRejectedError: if ``token`` is not exactly the shared secret.
            RouteNotFoundError: if ``path`` is not a known stream route.
        """

        if token is None or not secrets.compare_digest(token.encode("utf-8"), self._secret):
            raise AuthRejectedError()

        route = self._routes.get(path)
        if route is None:
            raise RouteNotFoundError(f"Unknown stream route: {path}")
        return route
