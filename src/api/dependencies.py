"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache

from config.settings import get_settings
from relay.dispatcher import RelayDispatcher


@lru_cache(maxsize=1)
def _dispatcher_factory() -> RelayDispatcher:
    return RelayDispatcher(get_settings())


def get_dispatcher() -> RelayDispatcher:
    return _dispatcher_factory()
