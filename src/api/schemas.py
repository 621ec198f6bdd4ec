"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = True
    version: str


class ServiceInfoResponse(BaseModel):
    service: str
    version: str
    status: str = "operational"
    endpoints: dict[str, str] = Field(description="Named HTTP and WebSocket endpoints.")
    active_sessions: int
    documentation: str = "See README.md for usage instructions"
