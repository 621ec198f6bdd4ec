"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SERVICE_NAME = "HyperClean Voice Agent"
SERVICE_VERSION = "3.0.0"


class Settings(BaseSettings):
    """Centralized environment configuration.

    Resolved once at startup and never mutated; the gate and every session
    read from the same instance.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Stream authentication
    stream_shared_secret: SecretStr = Field(
        description="Token callers must pass as ?token= on the stream URL.",
    )

    # OpenAI Realtime
    openai_api_key: SecretStr
    openai_model_realtime: str = Field(default="gpt-4o-realtime-preview")
    openai_realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    upstream_connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on opening the realtime connection before the call is dropped.",
    )

    # Persona copy
    booking_link_url: str = Field(default="https://www.hypercleantx.com/#services")

    # HTTP listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=10000)

    @field_validator("stream_shared_secret", "openai_api_key")
    @classmethod
    def ensure_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be empty")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
