"""Shared Redis access helpers.

Every component talks to the same `redis.asyncio` client. Calls are bounded
by a timeout and store faults surface as `StoreUnavailable`, leaving the
fail-open / degrade decision to the caller.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tollgate.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT_S = 0.5


def create_redis_client(redis_url: str, max_connections: int = 50) -> aioredis.Redis:
    """Create the shared client. Connections are opened lazily."""
    return aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )


async def bounded(awaitable: Awaitable[Any], timeout_s: float, operation: str) -> Any:
    """Await a store call with a timeout, mapping faults to StoreUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise StoreUnavailable(f"{operation} timed out after {timeout_s}s") from e
    except (RedisError, OSError) as e:
        raise StoreUnavailable(f"{operation} failed: {e}") from e


async def ping(client: Optional[aioredis.Redis], timeout_s: float = DEFAULT_STORE_TIMEOUT_S) -> bool:
    """Check store reachability without raising."""
    if client is None:
        return False
    try:
        return bool(await bounded(client.ping(), timeout_s, "PING"))
    except StoreUnavailable as e:
        logger.warning(f"Redis ping failed (graceful degradation): {e}")
        return False
