"""Content-addressed response cache for proxied AI calls."""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from tollgate.core.errors import StoreUnavailable
from tollgate.core.store import DEFAULT_STORE_TIMEOUT_S, bounded

logger = logging.getLogger(__name__)

DEFAULT_MAX_CACHE_BYTES = 100 * 1024


def canonical_json(value: Any) -> str:
    """Serialize with object keys sorted at every depth.

    Field order never changes the output.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass(frozen=True)
class CacheHit:
    """A cached payload, exactly as it was stored."""

    key: str
    payload: str

    def json(self) -> Any:
        return json.loads(self.payload)


class ResponseCache:
    """Response cache keyed by (sanitized endpoint, canonical request body).

    Lookup errors degrade to a miss and store errors to a no-op; neither
    propagates to the client.
    """

    def __init__(
        self,
        client: Optional[aioredis.Redis],
        key_prefix: str = "tollgate",
        default_ttl_s: int = 3600,
        max_bytes: int = DEFAULT_MAX_CACHE_BYTES,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        enabled: bool = True,
    ):
        """
        Args:
            client: Shared Redis client (None disables caching)
            key_prefix: Prefix for cache keys
            default_ttl_s: TTL for stored entries
            max_bytes: Largest cacheable payload
            timeout_s: Timeout for each Redis command
            enabled: Feature switch
        """
        self.client = client
        self.key_prefix = key_prefix
        self.default_ttl_s = default_ttl_s
        self.max_bytes = max_bytes
        self.timeout_s = timeout_s
        self.enabled = enabled and client is not None

    def make_key(self, endpoint: str, body: Any) -> str:
        """Derive the cache key.

        The digest is sha256 truncated to 16 hex chars; collisions at that
        length are an accepted risk.
        """
        sanitized = endpoint.replace("/", "_")
        digest = hashlib.sha256(f"{sanitized}\n{canonical_json(body)}".encode()).hexdigest()[:16]
        return f"{self.key_prefix}:cache:{sanitized}:{digest}"

    async def lookup(self, endpoint: str, body: Any) -> Optional[CacheHit]:
        """Return the cached payload, or None on miss or store error."""
        if not self.enabled:
            return None

        key = self.make_key(endpoint, body)
        try:
            cached = await bounded(self.client.get(key), self.timeout_s, "GET")
        except StoreUnavailable as e:
            logger.warning(f"Cache get error (graceful degradation): {e}", exc_info=True)
            return None

        if cached is None:
            logger.debug(f"Cache miss: endpoint={endpoint} key={key}")
            return None

        logger.debug(f"Cache hit: endpoint={endpoint} key={key}")
        return CacheHit(key=key, payload=cached)

    async def store(
        self,
        endpoint: str,
        body: Any,
        payload: str,
        ttl_s: Optional[int] = None,
    ) -> bool:
        """Store a serialized payload with TTL. Returns False on failure."""
        if not self.enabled:
            return False

        key = self.make_key(endpoint, body)
        ttl = ttl_s or self.default_ttl_s
        try:
            # SETEX sets value and TTL in one command; concurrent writers race
            # harmlessly, last write wins.
            await bounded(self.client.setex(key, ttl, payload), self.timeout_s, "SETEX")
        except StoreUnavailable as e:
            logger.warning(f"Cache set error (graceful degradation): {e}", exc_info=True)
            return False

        logger.debug(f"Response cached: endpoint={endpoint} key={key} ttl={ttl} size={len(payload)}")
        return True

    def is_cacheable(self, status_code: int, payload: Any, max_bytes: Optional[int] = None) -> bool:
        """Errors, streaming responses and oversized payloads are never cached."""
        if status_code >= 400:
            return False

        if isinstance(payload, dict) and payload.get("stream") is True:
            return False

        limit = max_bytes if max_bytes is not None else self.max_bytes
        serialized = payload if isinstance(payload, str) else canonical_json(payload)
        size = len(serialized.encode("utf-8"))
        if size > limit:
            logger.debug(f"Response too large to cache: size={size} max_bytes={limit}")
            return False

        return True

    async def invalidate(self, endpoint: str, body: Any) -> bool:
        """Delete one cache entry."""
        if not self.enabled:
            return False

        key = self.make_key(endpoint, body)
        try:
            deleted = await bounded(self.client.delete(key), self.timeout_s, "DEL")
        except StoreUnavailable as e:
            logger.warning(f"Cache invalidate error (graceful degradation): {e}", exc_info=True)
            return False
        return bool(deleted)

    def stats(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "ttl_s": self.default_ttl_s, "max_bytes": self.max_bytes}
