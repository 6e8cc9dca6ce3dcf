"""Fixed-window admission control backed by Redis counters.

A window is a calendar-aligned bucket, not a rolling interval from the
request's arrival: the counter key names the bucket and gets its TTL once,
when an increment finds none. A caller can therefore issue up to twice its
quota across a bucket boundary.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Type, Union

import redis.asyncio as aioredis

from tollgate.core.errors import StoreUnavailable
from tollgate.core.principals import Principal
from tollgate.core.store import DEFAULT_STORE_TIMEOUT_S, bounded
from tollgate.metrics.prometheus import rate_limit_fail_open_total, rate_limit_rejections_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allowed:
    """Request admitted."""

    limit: int
    remaining: int
    reset_at: float

    allowed = True


@dataclass(frozen=True)
class Denied:
    """Request rejected for the rest of the window."""

    limit: int
    retry_after_s: int
    reset_at: float
    remaining: int = 0

    allowed = False


Admission = Union[Allowed, Denied]


class AdmissionStrategy(ABC):
    """Interchangeable admission control used by the pipeline."""

    name: str = ""

    @abstractmethod
    async def admit(self, principal: Principal, endpoint: str) -> Admission:
        """Count this request and decide whether it may proceed."""
        pass

    def applies_to(self, endpoint: str) -> bool:
        return True


class FixedWindowRateLimiter(AdmissionStrategy):
    """Per-principal, per-endpoint counter over calendar-aligned windows."""

    name = "fixed_window"
    key_kind = "rate_limit"

    def __init__(
        self,
        client: Optional[aioredis.Redis],
        default_limit: int = 100,
        window_s: int = 60,
        key_prefix: str = "tollgate",
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            client: Shared Redis client (None disables enforcement)
            default_limit: Quota when the principal sets none
            window_s: Window length in seconds
            key_prefix: Prefix for Redis keys
            timeout_s: Timeout for each Redis command
            enabled: Feature switch
            clock: Time source (seconds since epoch)
        """
        self.client = client
        self.default_limit = default_limit
        self.window_s = window_s
        self.key_prefix = key_prefix
        self.timeout_s = timeout_s
        self.enabled = enabled and client is not None
        self.clock = clock

    def limit_for(self, principal: Principal) -> int:
        return principal.rate_limit_per_minute or self.default_limit

    def window_start(self, now: float) -> float:
        return now - (now % self.window_s)

    def bucket_label(self, now: float) -> str:
        """Calendar label of the current bucket, e.g. 2025-02-01T13:37."""
        start = datetime.fromtimestamp(self.window_start(now), tz=timezone.utc)
        return start.strftime("%Y-%m-%dT%H:%M")

    def make_key(self, principal: Principal, endpoint: str, now: float) -> str:
        return f"{self.key_prefix}:{self.key_kind}:{principal.id}:{endpoint}:{self.bucket_label(now)}"

    async def admit(self, principal: Principal, endpoint: str) -> Admission:
        now = self.clock()
        limit = self.limit_for(principal)
        reset_at = self.window_start(now) + self.window_s

        if not self.enabled:
            return Allowed(limit=limit, remaining=limit, reset_at=reset_at)

        key = self.make_key(principal, endpoint, now)
        try:
            count = await self._increment(key)
        except StoreUnavailable as e:
            logger.warning(
                f"Rate limit check error (failing open): principal={principal.id} "
                f"endpoint={endpoint}: {e}",
                exc_info=True,
            )
            rate_limit_fail_open_total.labels(strategy=self.name).inc()
            return Allowed(limit=limit, remaining=limit, reset_at=reset_at)

        if count > limit:
            logger.warning(
                f"Rate limit exceeded: principal={principal.id} user={principal.user_id} "
                f"endpoint={endpoint} count={count} limit={limit}"
            )
            rate_limit_rejections_total.labels(strategy=self.name).inc()
            return Denied(limit=limit, retry_after_s=self.window_s, reset_at=reset_at)

        logger.debug(
            f"Rate limit check passed: principal={principal.id} endpoint={endpoint} "
            f"count={count} limit={limit}"
        )
        return Allowed(limit=limit, remaining=max(0, limit - count), reset_at=reset_at)

    async def _increment(self, key: str) -> int:
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = await bounded(pipe.execute(), self.timeout_s, "INCR")
        if ttl == -1:
            # New bucket, or one whose EXPIRE failed earlier; later increments keep the TTL
            await bounded(self.client.expire(key, self.window_s), self.timeout_s, "EXPIRE")
        return int(count)


class BurstLimiter(FixedWindowRateLimiter):
    """Same bucket-and-increment algorithm over a coarser window.

    Protects specific expensive endpoints: applies only to endpoints under
    `path_prefix` and ignores the principal's per-minute quota.
    """

    name = "burst"
    key_kind = "burst_limit"

    def __init__(
        self,
        client: Optional[aioredis.Redis],
        max_requests: int,
        window_minutes: int,
        path_prefix: str = "/",
        **kwargs,
    ):
        super().__init__(client, default_limit=max_requests, window_s=window_minutes * 60, **kwargs)
        self.max_requests = max_requests
        self.window_minutes = window_minutes
        self.path_prefix = path_prefix

    def limit_for(self, principal: Principal) -> int:
        return self.max_requests

    def bucket_label(self, now: float) -> str:
        start = datetime.fromtimestamp(self.window_start(now), tz=timezone.utc)
        return f"{self.window_minutes}m:{start.strftime('%Y-%m-%dT%H:%M')}"

    def applies_to(self, endpoint: str) -> bool:
        return endpoint.startswith(self.path_prefix)


_STRATEGIES: Dict[str, Type[AdmissionStrategy]] = {
    FixedWindowRateLimiter.name: FixedWindowRateLimiter,
    BurstLimiter.name: BurstLimiter,
}


def get_strategy(name: str) -> Type[AdmissionStrategy]:
    """Look up an admission strategy class by name."""
    try:
        return _STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown admission strategy: {name}") from None


def register_strategy(strategy: Type[AdmissionStrategy]) -> None:
    _STRATEGIES[strategy.name] = strategy
