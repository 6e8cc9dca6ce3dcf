"""Metered proxy endpoint.

This module provides:
- /api/{path} - any-method proxy to the resolved AI provider
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from tollgate.app.dependencies import get_app_state
from tollgate.app.pipeline import RequestContext, new_request_id
from tollgate.app.schemas import (
    BadGatewayResponse,
    ErrorResponse,
    InternalErrorResponse,
    RateLimitResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


@router.api_route(
    "/api/{path:path}",
    methods=PROXY_METHODS,
    summary="Proxy AI API request",
    description=(
        "Forwards the call to the AI provider resolved from the path, with "
        "authentication, rate limiting, response caching, cost attribution "
        "and budget tracking. Requires the X-API-Key header."
    ),
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        429: {"model": RateLimitResponse},
        500: {"model": InternalErrorResponse},
        502: {"model": BadGatewayResponse},
    },
)
async def proxy(path: str, request: Request) -> Response:
    """Run the call through the proxy pipeline and return its result as-is."""
    state = get_app_state()
    if state.pipeline is None:
        raise HTTPException(status_code=503, detail="Gateway is not initialized")

    ctx = RequestContext(
        request_id=new_request_id(),
        method=request.method,
        endpoint=f"/{path}",
        headers=dict(request.headers),
        raw_body=await request.body(),
    )
    result = await state.pipeline.handle(ctx)

    return Response(
        content=result.content,
        status_code=result.status_code,
        headers=result.headers,
    )
