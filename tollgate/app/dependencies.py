"""Shared dependencies for the Tollgate FastAPI application.

This module contains:
- Global state management (config, store client, pipeline)
- Component wiring from configuration
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

import httpx
import redis.asyncio as aioredis

from tollgate.app.pipeline import ProxyPipeline
from tollgate.config.loader import ConfigLoader
from tollgate.config.schema import GatewayConfig
from tollgate.core.budget import BudgetLedger
from tollgate.core.cache import ResponseCache
from tollgate.core.cost_model import CostModel
from tollgate.core.forwarder import BackendForwarder, Provider, ProviderRegistry, default_providers
from tollgate.core.pricing import PricingTable
from tollgate.core.principals import ConfigKeyStore, KeyStore
from tollgate.core.rate_limiter import AdmissionStrategy, get_strategy
from tollgate.core.usage import InMemoryUsageSink, MetricsRecorder, RedisEventPublisher, RedisUsageSink

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container for all shared components."""

    config_loader: Optional[ConfigLoader] = None
    config: Optional[GatewayConfig] = None
    redis: Optional[aioredis.Redis] = None
    http_client: Optional[httpx.AsyncClient] = None
    pipeline: Optional[ProxyPipeline] = None


# Global application state instance
app_state = AppState()


def get_app_state() -> AppState:
    """Get the global application state."""
    return app_state


def init_providers(
    config: GatewayConfig,
    resolve_secret=lambda value: value,
    environ: Optional[Mapping[str, str]] = None,
) -> List[Provider]:
    """Build providers from configuration, or the built-in pair when none are configured.

    A provider without an api_key falls back to the <NAME>_API_KEY
    environment variable.
    """
    environ = environ if environ is not None else os.environ

    def env_key(name: str) -> Optional[str]:
        return environ.get(f"{name.upper()}_API_KEY") or None

    if not config.providers:
        return default_providers(openai_key=env_key("openai"), anthropic_key=env_key("anthropic"))

    providers = []
    for name, provider_config in config.providers.items():
        api_key = resolve_secret(provider_config.api_key) or env_key(name)
        if not api_key and not config.mock_backend:
            logger.warning(f"No API key configured for provider {name}; calls will fail with 502")
        providers.append(
            Provider(
                name=name,
                base_url=provider_config.base_url,
                api_key=api_key,
                auth_scheme=provider_config.auth_scheme,
                auth_header=provider_config.auth_header,
                extra_headers=dict(provider_config.extra_headers),
                path_prefix=provider_config.path_prefix,
                primary=provider_config.primary,
            )
        )
    return providers


def init_admission(config: GatewayConfig, client: Optional[aioredis.Redis]) -> List[AdmissionStrategy]:
    """Per-principal fixed window first, then the configured burst limits."""
    common = {
        "key_prefix": config.redis.key_prefix,
        "timeout_s": config.timeouts.store_timeout_s,
        "enabled": config.features.rate_limiting,
    }
    strategies: List[AdmissionStrategy] = [
        get_strategy("fixed_window")(
            client,
            default_limit=config.defaults.rate_limit_per_minute,
            **common,
        )
    ]
    for burst in config.burst_limits:
        strategies.append(
            get_strategy("burst")(
                client,
                max_requests=burst.max_requests,
                window_minutes=burst.window_minutes,
                path_prefix=burst.path_prefix,
                **common,
            )
        )
        logger.info(
            f"Burst limit configured: prefix={burst.path_prefix} "
            f"max_requests={burst.max_requests} window_minutes={burst.window_minutes}"
        )
    return strategies


def init_pricing(config: GatewayConfig) -> PricingTable:
    if not config.pricing:
        return PricingTable()
    return PricingTable.with_overrides(
        {model: (entry.prompt, entry.completion) for model, entry in config.pricing.items()}
    )


def init_pipeline(
    config: GatewayConfig,
    client: Optional[aioredis.Redis],
    key_store: Optional[KeyStore] = None,
    forwarder: Optional[BackendForwarder] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    resolve_secret=lambda value: value,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxyPipeline:
    """Wire every pipeline component from configuration.

    Args:
        config: Validated configuration
        client: Shared Redis client
        key_store: Key lookup (built from the principals section when omitted)
        forwarder: Upstream forwarder (built from the providers section when omitted)
        http_client: Shared HTTP client for the forwarder
        resolve_secret: Resolves 'env:VAR' references
        environ: Environment mapping for provider key fallbacks
    """
    prefix = config.redis.key_prefix
    store_timeout_s = config.timeouts.store_timeout_s

    if key_store is None:
        key_store = ConfigKeyStore.from_config(
            {pid: p.model_dump() for pid, p in config.principals.items()},
            default_daily_budget_usd=config.defaults.daily_budget_usd,
            resolve_secret=resolve_secret,
        )

    if forwarder is None:
        registry = ProviderRegistry(init_providers(config, resolve_secret, environ))
        forwarder = BackendForwarder(
            registry,
            client=http_client,
            timeout_s=config.timeouts.upstream_timeout_s,
            connect_timeout_s=config.timeouts.upstream_connect_timeout_s,
            mock=config.mock_backend,
        )
        if config.mock_backend:
            logger.info("Mock backend enabled: upstream providers will not be called")

    cache = ResponseCache(
        client,
        key_prefix=prefix,
        default_ttl_s=config.features.cache_ttl_s,
        max_bytes=config.features.cache_max_bytes,
        timeout_s=store_timeout_s,
        enabled=config.features.caching,
    )
    budget = None
    if client is not None:
        budget = BudgetLedger(
            client,
            key_prefix=prefix,
            timeout_s=store_timeout_s,
            alerts_enabled=config.features.budget_alerts,
        )
        recorder = MetricsRecorder(
            RedisUsageSink(client, key_prefix=prefix, timeout_s=store_timeout_s),
            RedisEventPublisher(client, timeout_s=store_timeout_s),
        )
    else:
        logger.warning("No store client configured: usage records are kept in memory only")
        recorder = MetricsRecorder(InMemoryUsageSink())

    return ProxyPipeline(
        key_store=key_store,
        forwarder=forwarder,
        cost_model=CostModel(init_pricing(config)),
        cache=cache,
        recorder=recorder,
        budget=budget,
        admission=init_admission(config, client),
        side_effect_timeout_s=config.timeouts.side_effect_timeout_s,
        cost_tracking=config.features.cost_tracking,
        budget_precheck=config.features.budget_precheck,
    )
