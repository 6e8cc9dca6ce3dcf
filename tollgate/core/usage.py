"""Usage records and their sinks.

One append-only record per completed call (cache hit or miss), plus a live
update event for dashboards.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from tollgate.core.errors import StoreUnavailable, UpstreamStatus
from tollgate.core.store import DEFAULT_STORE_TIMEOUT_S, bounded
from tollgate.metrics.prometheus import (
    cost_usd_total,
    request_latency_ms,
    requests_total,
    tokens_total,
)

logger = logging.getLogger(__name__)

DASHBOARD_CHANNEL = "dashboard:updates"


@dataclass(frozen=True)
class UsageRecord:
    """Durable record of one completed call. Never mutated after creation."""

    request_id: str
    user_id: str
    principal_id: str
    endpoint: str
    method: str
    status_code: int
    latency_ms: int
    cost_usd: float
    tokens_used: int
    model: Optional[str]
    cached: bool
    timestamp: str

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UsageSink(ABC):
    """Durable, append-only usage store."""

    @abstractmethod
    async def append(self, record: UsageRecord) -> None:
        pass


class EventPublisher(ABC):
    """Live-update publish sink."""

    @abstractmethod
    async def publish(self, event: Dict[str, Any]) -> None:
        pass


class InMemoryUsageSink(UsageSink):
    """Keeps records in a list. For development and tests."""

    def __init__(self):
        self.records: List[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self.records.append(record)


class RedisUsageSink(UsageSink):
    """Appends JSON records to a Redis list."""

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "tollgate",
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
    ):
        self.client = client
        self.key = f"{key_prefix}:usage:records"
        self.timeout_s = timeout_s

    async def append(self, record: UsageRecord) -> None:
        await bounded(self.client.rpush(self.key, json.dumps(record.to_dict())), self.timeout_s, "RPUSH")


class NullEventPublisher(EventPublisher):
    async def publish(self, event: Dict[str, Any]) -> None:
        return None


class RedisEventPublisher(EventPublisher):
    """Publishes events on a Redis pub/sub channel."""

    def __init__(
        self,
        client: aioredis.Redis,
        channel: str = DASHBOARD_CHANNEL,
        timeout_s: float = DEFAULT_STORE_TIMEOUT_S,
    ):
        self.client = client
        self.channel = channel
        self.timeout_s = timeout_s

    async def publish(self, event: Dict[str, Any]) -> None:
        await bounded(self.client.publish(self.channel, json.dumps(event)), self.timeout_s, "PUBLISH")


def dashboard_event(record: UsageRecord) -> Dict[str, Any]:
    return {
        "type": "request",
        "timestamp": record.timestamp,
        "userId": record.user_id,
        "endpoint": record.endpoint,
        "method": record.method,
        "statusCode": record.status_code,
        "responseTime": record.latency_ms,
        "cost": record.cost_usd,
        "tokens": record.tokens_used,
        "model": record.model,
        "cached": record.cached,
    }


class MetricsRecorder:
    """Records usage: durable append, live publish, Prometheus counters.

    A failed append propagates (the caller treats the stage as failed); a
    failed publish is only logged.
    """

    def __init__(self, sink: UsageSink, publisher: Optional[EventPublisher] = None):
        self.sink = sink
        self.publisher = publisher or NullEventPublisher()

    async def record(self, record: UsageRecord, provider: str = "none") -> None:
        self._observe(record, provider)

        await self.sink.append(record)
        logger.debug(
            f"Usage stored: user={record.user_id} endpoint={record.endpoint} "
            f"cost={record.cost_usd} cached={record.cached}"
        )

        try:
            await self.publisher.publish(dashboard_event(record))
        except (StoreUnavailable, OSError) as e:
            logger.warning(f"Error publishing usage update for user={record.user_id}: {e}", exc_info=True)

    @staticmethod
    def _observe(record: UsageRecord, provider: str) -> None:
        cache = "hit" if record.cached else "miss"
        requests_total.labels(
            provider=provider,
            status=UpstreamStatus.normalize(record.status_code),
            cache=cache,
        ).inc()
        request_latency_ms.labels(provider=provider, cache=cache).observe(record.latency_ms)
        if record.cost_usd > 0:
            cost_usd_total.labels(provider=provider, model=record.model or "unknown").inc(record.cost_usd)
        if record.tokens_used > 0:
            tokens_total.labels(provider=provider, model=record.model or "unknown").inc(record.tokens_used)
