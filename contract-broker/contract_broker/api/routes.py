from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .. import __version__
from ..config import Settings
from ..core.broker import Broker
from .deps import get_broker, get_settings_dep

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/healthz",
    tags=["health"],
    summary="Liveness",
    responses={200: {"content": {"application/json": {"example": {"status": "ok"}}}}},
)
def healthz() -> dict:
    """Liveness probe; does not touch the store."""
    return {"status": "ok"}


@router.get(
    "/health",
    tags=["health"],
    summary="Readiness",
    description="Checks the contract store and, when enabled, the verdict cache.",
    responses={
        200: {"content": {"application/json": {"example": {"status": "healthy", "database": "ok"}}}},
        503: {"description": "Contract store unreachable"},
    },
)
def health(broker: Broker = Depends(get_broker)):
    database_ok = broker.db.ping()
    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "database": "ok" if database_ok else "unavailable",
        "cache": broker.cache.health() if broker.cache else {"enabled": False},
    }
    if not database_ok:
        logger.warning("Health check failed: contract store unavailable")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


@router.get("/version", tags=["health"], summary="Service version")
def version(settings: Settings = Depends(get_settings_dep)) -> dict:
    return {"service": settings.SERVICE_NAME, "version": __version__}


@router.get(
    "/metrics",
    tags=["metrics"],
    summary="Prometheus metrics",
    responses={200: {"content": {"text/plain": {}}}},
)
def metrics(broker: Broker = Depends(get_broker)) -> Response:
    data = generate_latest(broker.metrics.registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
