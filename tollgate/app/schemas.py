"""Response schemas for gateway-generated responses.

Successful proxy responses are the provider's own payloads and are never
modelled here. These cover rejections, failures and the health endpoints.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Body of a rejection (401, 400, 402)."""

    error: str = Field(..., description="HTTP reason phrase, e.g. 'Unauthorized'")
    code: str = Field(..., description="Normalized error code, e.g. UNAUTHORIZED")
    message: str = Field(..., description="Human-readable explanation")


class RateLimitResponse(ErrorResponse):
    """Body of a 429 rejection."""

    model_config = ConfigDict(populate_by_name=True)

    retry_after: int = Field(..., alias="retryAfter", description="Seconds until the window resets")
    limit: int = Field(..., description="Quota for the window")
    remaining: int = Field(default=0, description="Requests left in the window")


class BadGatewayResponse(BaseModel):
    """Synthetic body returned when the provider could not be reached."""

    error: str = "Bad Gateway"
    message: str = Field(..., description="Which provider could not be reached")
    details: Optional[str] = Field(None, description="Transport error detail")


class InternalErrorResponse(BaseModel):
    """Body of an uncategorized fault."""

    error: str = "Internal Server Error"
    message: str = Field(..., description="Error summary")
    request_id: str = Field(..., description="Identifier to quote when reporting the fault")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    status: str
    store: str
