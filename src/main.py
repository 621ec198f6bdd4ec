"""Entry point for the HyperClean telephony-to-realtime voice relay."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api.dependencies import get_dispatcher
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from config.settings import SERVICE_NAME, SERVICE_VERSION, get_settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher = get_dispatcher()
    LOGGER.info("%s v%s ready", SERVICE_NAME, SERVICE_VERSION)
    LOGGER.info("WebSocket endpoints: %s", ", ".join(dispatcher.routes))
    LOGGER.info("Using OpenAI model: %s", settings.openai_model_realtime)
    LOGGER.info("Environment: %s", settings.environment)
    yield
    LOGGER.info("Shutting down with %d active session(s)", dispatcher.active_sessions)


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title=SERVICE_NAME,
    description="Bridges Twilio Media Streams to the OpenAI Realtime API.",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)
app.include_router(api_router)
# Catch-all WebSocket route; keep last.
app.include_router(twilio_router)


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
