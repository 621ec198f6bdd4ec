"""Static route table mapping stream paths to personas."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

from prompts.loader import load_prompt


@dataclass(frozen=True, slots=True)
class PersonaConfig:
    voice: str
    instructions: str


@dataclass(frozen=True, slots=True)
class Route:
    path: str
    persona: PersonaConfig


# path -> (voice, prompt file)
ROUTE_TABLE: Final[Mapping[str, tuple[str, str]]] = MappingProxyType(
    {
        "/stream": ("alloy", "general.txt"),
        "/stream-sales": ("alloy", "sales.txt"),
        "/stream-service": ("verse", "service.txt"),
    }
)


def build_routes(*, booking_url: str) -> Mapping[str, Route]:
    """Resolve every known route to its persona. Called once at startup."""

    routes = {
        path: Route(
            path=path,
            persona=PersonaConfig(
                voice=voice,
                instructions=load_prompt(prompt_file, booking_url=booking_url),
            ),
        )
        for path, (voice, prompt_file) in ROUTE_TABLE.items()
    }
    return MappingProxyType(routes)
