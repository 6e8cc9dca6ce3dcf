"""Tollgate FastAPI application - metering reverse proxy for AI providers.

This is the main application module that:
- Initializes the FastAPI application
- Configures middleware (CORS, exception handling)
- Registers all route handlers
- Manages application lifespan (startup/shutdown)
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import List

import httpx
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tollgate import __version__
from tollgate.app.dependencies import get_app_state, init_pipeline
from tollgate.app.pipeline import new_request_id
from tollgate.app.schemas import InternalErrorResponse
from tollgate.config.loader import ConfigLoader
from tollgate.core.store import create_redis_client

# Configure structured JSON logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(message)s",
)
logger = logging.getLogger(__name__)

# Observability headers readable by browser clients
EXPOSED_HEADERS = [
    "X-Request-ID",
    "X-Cache",
    "X-Request-Cost",
    "X-Response-Time",
    "X-Tokens-Used",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Loads configuration, opens the shared Redis and HTTP clients, wires the
    pipeline, and closes the clients on shutdown.
    """
    state = get_app_state()

    # Startup
    config_path = os.getenv("TOLLGATE_CONFIG", "config.yaml")
    logger.info(f"Loading configuration from {config_path}")
    state.config_loader = ConfigLoader(config_path)
    try:
        state.config = state.config_loader.load()
    except ValueError as e:
        logger.critical(f"Configuration validation failed: {e}")
        raise
    config = state.config

    logger.info(f"Initializing Redis connection: {config.redis.url}")
    state.redis = create_redis_client(config.redis.url)

    state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            config.timeouts.upstream_timeout_s,
            connect=config.timeouts.upstream_connect_timeout_s,
        ),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )

    state.pipeline = init_pipeline(
        config,
        state.redis,
        http_client=state.http_client,
        resolve_secret=state.config_loader.resolve_secret,
    )
    logger.info(
        f"Tollgate started: providers={state.pipeline.forwarder.registry.names()} "
        f"principals={len(config.principals)} caching={config.features.caching} "
        f"rate_limiting={config.features.rate_limiting} mock_backend={config.mock_backend}"
    )

    yield

    # Shutdown
    logger.info("Shutting down Tollgate...")
    if state.http_client:
        await state.http_client.aclose()
    if state.redis:
        await state.redis.aclose()
    state.pipeline = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Tollgate",
        version=__version__,
        description=(
            "Metering reverse proxy for AI completion providers: "
            "authentication, rate limiting, response caching, cost attribution "
            "and daily budget tracking in front of OpenAI and Anthropic APIs."
        ),
        lifespan=lifespan,
    )

    # Configure CORS middleware
    _configure_cors(app)

    # Register exception handlers
    _register_exception_handlers(app)

    # Register routes
    _register_routes(app)

    return app


def _configure_cors(app: FastAPI) -> None:
    """Configure CORS middleware."""
    cors_origins_env = os.getenv("CORS_ORIGINS", "*")
    is_production = os.getenv("ENVIRONMENT", "").lower() == "production"

    if cors_origins_env == "*":
        if is_production:
            logger.warning(
                "SECURITY WARNING: CORS_ORIGINS is set to '*' in production. "
                "Consider restricting to specific origins."
            )
        cors_origins = ["*"]
    else:
        cors_origins = _validate_cors_origins(cors_origins_env)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )


def _validate_cors_origins(cors_origins_env: str) -> List[str]:
    """Keep well-formed origins from a comma-separated list."""
    validated_origins = []
    for origin in (o.strip() for o in cors_origins_env.split(",")):
        if not origin:
            continue
        if origin != "*" and not origin.startswith(("http://", "https://")):
            logger.warning(f"Invalid CORS origin format (skipping): {origin}")
            continue
        validated_origins.append(origin)
    return validated_origins


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Faults outside the pipeline become a 500 with a request identifier."""
        request_id = request.headers.get("X-Request-ID") or new_request_id()
        logger.error(
            f"Unhandled exception: request_id={request_id} {type(exc).__name__}: {exc}",
            exc_info=True,
        )
        body = InternalErrorResponse(message="Internal server error", request_id=request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(),
            headers={"X-Request-ID": request_id},
        )


def _register_routes(app: FastAPI) -> None:
    """Register all route handlers."""
    from tollgate.app.routes import metrics, proxy

    app.include_router(metrics.router)
    app.include_router(proxy.router)


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
