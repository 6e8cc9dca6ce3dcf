"""Pydantic schemas for Tollgate configuration validation."""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class FeaturesConfig(BaseModel):
    """Feature switches."""

    caching: bool = Field(default=True, description="Enable response caching")
    cache_ttl_s: int = Field(default=3600, gt=0, description="Cache entry time to live in seconds")
    cache_max_bytes: int = Field(default=100 * 1024, gt=0, description="Largest cacheable payload in bytes")
    rate_limiting: bool = Field(default=True, description="Enable per-principal rate limiting")
    budget_alerts: bool = Field(default=True, description="Log alerts when budget thresholds are crossed")
    cost_tracking: bool = Field(default=True, description="Detect token usage and attribute cost")
    budget_precheck: bool = Field(
        default=False,
        description="Reject calls before forwarding when the daily budget would be exceeded",
    )


class DefaultsConfig(BaseModel):
    """Defaults applied when a principal does not set its own limits."""

    rate_limit_per_minute: int = Field(default=100, gt=0, description="Requests per minute")
    daily_budget_usd: float = Field(default=50.0, ge=0.0, description="Daily spend limit in USD")


class TimeoutsConfig(BaseModel):
    """Bounded timeouts for every external call."""

    store_timeout_s: float = Field(default=0.5, gt=0, description="Timeout for a single store command")
    side_effect_timeout_s: float = Field(default=1.0, gt=0, description="Timeout for a best-effort stage")
    upstream_timeout_s: float = Field(default=60.0, gt=0, description="Total upstream request timeout")
    upstream_connect_timeout_s: float = Field(default=5.0, gt=0, description="Upstream connect timeout")


class RedisConfig(BaseModel):
    """Redis connection configuration."""

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field(default="tollgate", min_length=1, description="Prefix for every key")


class ProviderConfig(BaseModel):
    """Upstream provider configuration."""

    base_url: str = Field(..., description="Base URL of the provider API")
    auth_scheme: str = Field(default="bearer", description="Auth scheme: bearer or header")
    auth_header: str = Field(default="Authorization", description="Header that carries the key")
    api_key: Optional[str] = Field(
        default=None, description="API key (can be 'env:VAR_NAME' for environment variable)"
    )
    extra_headers: Dict[str, str] = Field(default_factory=dict, description="Headers added to every call")
    path_prefix: str = Field(default="/v1", description="Path prefix the provider requires")
    primary: bool = Field(default=False, description="Default provider for completion-style paths")

    @field_validator("auth_scheme")
    @classmethod
    def validate_auth_scheme(cls, v: str) -> str:
        v = v.lower()
        if v not in {"bearer", "header"}:
            raise ValueError(f"Invalid auth_scheme: {v}. Must be 'bearer' or 'header'")
        return v


class PrincipalConfig(BaseModel):
    """Caller identity configured statically."""

    api_key: str = Field(..., min_length=1, description="Key presented in the X-API-Key header")
    user_id: str = Field(..., min_length=1, description="Owning user")
    rate_limit_per_minute: Optional[int] = Field(
        default=None, gt=0, description="Per-minute quota (falls back to defaults)"
    )
    daily_budget_usd: Optional[float] = Field(
        default=None, ge=0.0, description="Daily spend limit (falls back to defaults)"
    )
    active: bool = Field(default=True, description="Inactive keys are rejected with 401")


class BurstLimitConfig(BaseModel):
    """Coarse-window limit protecting an expensive path prefix."""

    path_prefix: str = Field(..., description="Endpoints starting with this prefix are limited")
    max_requests: int = Field(..., gt=0, description="Requests allowed per window")
    window_minutes: int = Field(..., gt=0, description="Window length in minutes")


class PricingEntryConfig(BaseModel):
    """Per-token prices for one model."""

    prompt: float = Field(..., ge=0.0, description="USD per prompt token")
    completion: float = Field(..., ge=0.0, description="USD per completion token")


class GatewayConfig(BaseModel):
    """Root configuration model."""

    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    mock_backend: bool = Field(default=False, description="Answer from synthetic payloads instead of upstream")
    providers: Dict[str, ProviderConfig] = Field(
        default_factory=dict,
        description="Provider overrides; built-in openai and anthropic are used when empty",
    )
    principals: Dict[str, PrincipalConfig] = Field(
        default_factory=dict, description="Principals keyed by principal id"
    )
    burst_limits: List[BurstLimitConfig] = Field(default_factory=list)
    pricing: Dict[str, PricingEntryConfig] = Field(
        default_factory=dict, description="Per-token pricing additions and overrides"
    )

    @model_validator(mode="after")
    def validate_unique_api_keys(self) -> "GatewayConfig":
        """Two principals may not share an API key."""
        seen: Dict[str, str] = {}
        for principal_id, principal in self.principals.items():
            if principal.api_key in seen:
                raise ValueError(
                    f"Principals '{seen[principal.api_key]}' and '{principal_id}' share an api_key"
                )
            seen[principal.api_key] = principal_id
        return self

    @model_validator(mode="after")
    def validate_single_primary(self) -> "GatewayConfig":
        primaries = [name for name, p in self.providers.items() if p.primary]
        if len(primaries) > 1:
            raise ValueError(f"Only one provider may be primary, got: {', '.join(primaries)}")
        return self
