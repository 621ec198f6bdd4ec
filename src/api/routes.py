"""Liveness and service metadata routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_dispatcher
from api.schemas import HealthResponse, ServiceInfoResponse
from config.settings import SERVICE_NAME, SERVICE_VERSION
from relay.dispatcher import RelayDispatcher

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(version=SERVICE_VERSION)


@router.get("/", response_model=ServiceInfoResponse)
async def service_info(
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> ServiceInfoResponse:
    endpoints = {"health": "/health"}
    for path in dispatcher.routes:
        endpoints[_endpoint_name(path)] = path
    return ServiceInfoResponse(
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        endpoints=endpoints,
        active_sessions=dispatcher.active_sessions,
    )


def _endpoint_name(path: str) -> str:
    # "/stream-sales" -> "streamSales"
    head, *rest = path.strip("/").split("-")
    return head + "".join(part.capitalize() for part in rest)
