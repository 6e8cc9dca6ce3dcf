"""Health and monitoring endpoints.

This module provides:
- GET /health - Basic health check
- GET /readyz - Readiness check (store reachability)
- GET /metrics - Prometheus metrics
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tollgate import __version__
from tollgate.app.dependencies import get_app_state
from tollgate.app.schemas import HealthResponse, ReadinessResponse
from tollgate.core.store import ping

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint for load balancers and monitoring."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/readyz", response_model=ReadinessResponse)
async def readyz():
    """Ready when the shared store answers a ping.

    The gateway keeps serving without the store (rate limits fail open, the
    cache misses), so this reports degraded rather than failing hard.
    """
    state = get_app_state()
    timeout_s = state.config.timeouts.store_timeout_s if state.config else 0.5
    if await ping(state.redis, timeout_s):
        return ReadinessResponse(status="ready", store="ok")
    return JSONResponse(
        status_code=503,
        content=ReadinessResponse(status="degraded", store="unavailable").model_dump(),
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
