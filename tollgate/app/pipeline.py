"""Request pipeline for metered proxy calls.

Stages, in order:
- authenticate the caller (401)
- admission control: fixed window and burst limits (429)
- parse the JSON body (400)
- resolve the provider (400)
- optional budget pre-check (402)
- cache lookup; a hit is served as stored
- forward upstream, attribute cost
- best-effort bookkeeping (budget, usage, cache), run concurrently

A best-effort stage never changes the response the client receives.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

from tollgate.app.schemas import InternalErrorResponse
from tollgate.core.budget import BudgetLedger
from tollgate.core.cache import CacheHit, ResponseCache
from tollgate.core.cost_model import NOT_AN_AI_RESPONSE, CostAttribution, CostModel
from tollgate.core.errors import (
    AuthenticationError,
    BudgetExceeded,
    ErrorCode,
    GatewayError,
    InvalidRequestBody,
    ProviderUnresolved,
    RateLimitExceeded,
    StoreUnavailable,
)
from tollgate.core.forwarder import BackendForwarder, Provider, UpstreamResponse
from tollgate.core.logging import StructuredLogger, structured_logger
from tollgate.core.principals import KeyStore, Principal
from tollgate.core.rate_limiter import Admission, AdmissionStrategy
from tollgate.core.usage import MetricsRecorder, UsageRecord
from tollgate.metrics.prometheus import (
    cache_hits_total,
    cache_misses_total,
    rejections_total,
    side_effect_failures_total,
    unpriced_responses_total,
)

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
JSON_CONTENT_TYPE = "application/json"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def serialize_payload(payload: Any) -> str:
    """Serialize a JSON payload once; the same text is sent and cached."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def format_request_cost(cost_usd: float) -> str:
    return f"${cost_usd:.6f}"


@dataclass
class RequestContext:
    """Per-request scratch state, discarded when the response is sent."""

    request_id: str
    method: str
    endpoint: str
    headers: Dict[str, str]
    raw_body: bytes = b""
    arrived_at: float = field(default_factory=time.monotonic)
    principal: Optional[Principal] = None
    provider: Optional[Provider] = None
    body: Any = None
    admission: Optional[Admission] = None

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.arrived_at) * 1000)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one best-effort stage."""

    stage: str
    ok: bool
    error: Optional[str] = None


@dataclass
class ProxyResult:
    """What the route sends back to the client."""

    status_code: int
    content: bytes
    headers: Dict[str, str]
    state: str  # "served", "rejected" or "failed"
    stages: List[StageResult] = field(default_factory=list)

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", JSON_CONTENT_TYPE)


class ProxyPipeline:
    """Runs one inbound call through authentication, admission, cache,
    forwarding, cost attribution and bookkeeping."""

    def __init__(
        self,
        key_store: KeyStore,
        forwarder: BackendForwarder,
        cost_model: CostModel,
        cache: ResponseCache,
        recorder: MetricsRecorder,
        budget: Optional[BudgetLedger] = None,
        admission: Sequence[AdmissionStrategy] = (),
        side_effect_timeout_s: float = 1.0,
        cost_tracking: bool = True,
        budget_precheck: bool = False,
        request_logger: Optional[StructuredLogger] = None,
    ):
        """
        Args:
            key_store: API key lookup
            forwarder: Upstream forwarder and provider resolution
            cost_model: Usage detection and pricing
            cache: Response cache
            recorder: Usage recording
            budget: Daily spend ledger (None disables budget tracking)
            admission: Admission strategies, checked in order
            side_effect_timeout_s: Timeout for each best-effort stage
            cost_tracking: Detect usage and attribute cost
            budget_precheck: Reject calls the daily budget cannot cover
            request_logger: Structured request summary logger
        """
        self.key_store = key_store
        self.forwarder = forwarder
        self.cost_model = cost_model
        self.cache = cache
        self.recorder = recorder
        self.budget = budget
        self.admission = list(admission)
        self.side_effect_timeout_s = side_effect_timeout_s
        self.cost_tracking = cost_tracking
        self.budget_precheck = budget_precheck
        self.request_logger = request_logger or structured_logger

    async def handle(self, ctx: RequestContext) -> ProxyResult:
        """Run the pipeline. Never raises."""
        try:
            return await self._run(ctx)
        except GatewayError as e:
            return self._reject(ctx, e)
        except Exception as e:
            logger.error(
                f"Proxy request failed: request_id={ctx.request_id} endpoint={ctx.endpoint}: "
                f"{type(e).__name__}: {e}",
                exc_info=True,
            )
            return self._internal_error(ctx)

    async def _run(self, ctx: RequestContext) -> ProxyResult:
        ctx.principal = await self.authenticate(ctx)
        ctx.admission = await self.admit(ctx.principal, ctx.endpoint)
        ctx.body = self.parse_body(ctx.raw_body)

        ctx.provider = self.forwarder.resolve_provider(ctx.endpoint)
        if ctx.provider is None:
            logger.warning(f"Could not detect backend for endpoint: {ctx.endpoint}")
            raise ProviderUnresolved("Could not determine backend API for this endpoint")

        if self.budget_precheck:
            await self.check_budget(ctx.principal, ctx.body)

        hit = await self.cache.lookup(ctx.endpoint, ctx.body)
        if hit is not None:
            cache_hits_total.labels(provider=ctx.provider.name).inc()
            return await self._serve_hit(ctx, hit)
        if self.cache.enabled:
            cache_misses_total.labels(provider=ctx.provider.name).inc()

        upstream = await self.forwarder.forward(
            ctx.provider, ctx.endpoint, ctx.method, ctx.headers, ctx.body
        )
        return await self._serve_upstream(ctx, upstream)

    async def authenticate(self, ctx: RequestContext) -> Principal:
        api_key = ctx.headers.get(API_KEY_HEADER)
        if not api_key:
            raise AuthenticationError("Missing X-API-Key header")

        principal = await self.key_store.find_by_key(api_key)
        if principal is None:
            logger.warning(f"Invalid API key attempted: request_id={ctx.request_id}")
            raise AuthenticationError("Invalid API key")
        if not principal.active:
            logger.warning(f"Inactive API key used: principal={principal.id}")
            raise AuthenticationError("API key is inactive")
        return principal

    async def admit(self, principal: Principal, endpoint: str) -> Optional[Admission]:
        """Check every applicable strategy; the first one's decision sets the headers."""
        decision: Optional[Admission] = None
        for strategy in self.admission:
            if not strategy.applies_to(endpoint):
                continue
            result = await strategy.admit(principal, endpoint)
            if not result.allowed:
                headers = _rate_limit_headers(result)
                headers["Retry-After"] = str(result.retry_after_s)
                raise RateLimitExceeded(
                    f"Rate limit of {result.limit} requests exceeded. "
                    f"Try again in {result.retry_after_s} seconds.",
                    retry_after_s=result.retry_after_s,
                    limit=result.limit,
                    remaining=result.remaining,
                    headers=headers,
                )
            if decision is None:
                decision = result
        return decision

    @staticmethod
    def parse_body(raw_body: bytes) -> Any:
        if not raw_body or not raw_body.strip():
            return None
        try:
            return json.loads(raw_body)
        except ValueError as e:
            raise InvalidRequestBody(f"Invalid JSON body: {e}") from e

    async def check_budget(self, principal: Principal, body: Any) -> None:
        if self.budget is None:
            return
        estimate = self.cost_model.estimate_from_body(body)
        try:
            exceeded = await self.budget.would_exceed(
                principal.user_id, principal.daily_budget_usd, estimate
            )
        except StoreUnavailable as e:
            logger.warning(f"Budget pre-check error (failing open): user={principal.user_id}: {e}", exc_info=True)
            return
        if exceeded:
            raise BudgetExceeded(
                f"Daily budget of ${principal.daily_budget_usd:.2f} would be exceeded "
                f"(estimated cost ${estimate:.6f})"
            )

    async def _serve_hit(self, ctx: RequestContext, hit: CacheHit) -> ProxyResult:
        latency_ms = ctx.elapsed_ms()
        model = _model_of(hit.payload)
        record = self._usage_record(ctx, 200, latency_ms, 0.0, 0, model, cached=True)
        stages = await self._run_stages([("metrics", self.recorder.record(record, ctx.provider.name))])

        headers = {
            "content-type": JSON_CONTENT_TYPE,
            "X-Request-ID": ctx.request_id,
            "X-Cache": "HIT",
            "X-Request-Cost": format_request_cost(0.0),
            "X-Response-Time": f"{latency_ms}ms",
            "X-Tokens-Used": "0",
        }
        headers.update(_rate_limit_headers(ctx.admission))

        self.request_logger.log_request(
            request_id=ctx.request_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            status_code=200,
            provider=ctx.provider.name,
            principal_id=ctx.principal.id,
            user_id=ctx.principal.user_id,
            latency_ms=latency_ms,
            cost_usd=0.0,
            model=model,
            cache_hit=True,
        )
        return ProxyResult(200, hit.payload.encode("utf-8"), headers, "served", stages)

    async def _serve_upstream(self, ctx: RequestContext, upstream: UpstreamResponse) -> ProxyResult:
        attribution = self._attribute(ctx.provider, upstream)
        latency_ms = ctx.elapsed_ms()
        # The provider was never reached
        state = "failed" if upstream.synthetic and upstream.status_code == 502 else "served"

        if upstream.is_json:
            payload = serialize_payload(upstream.body)
            content_type = JSON_CONTENT_TYPE
        else:
            payload = upstream.body
            content_type = upstream.headers.get("content-type", "text/plain")

        record = self._usage_record(
            ctx,
            upstream.status_code,
            latency_ms,
            attribution.cost_usd,
            attribution.total_tokens,
            attribution.model,
            cached=False,
        )

        stages: List[Tuple[str, Awaitable[Any]]] = []
        if self.budget is not None and attribution.cost_usd > 0:
            stages.append(
                (
                    "budget",
                    self.budget.track(ctx.principal.user_id, attribution.cost_usd, ctx.principal.daily_budget_usd),
                )
            )
        stages.append(("metrics", self.recorder.record(record, ctx.provider.name)))
        # Hits are always replayed as 200, so only 200s are stored
        if (
            self.cache.enabled
            and upstream.status_code == 200
            and upstream.is_json
            and self.cache.is_cacheable(upstream.status_code, upstream.body)
        ):
            stages.append(("cache_store", self._store_in_cache(ctx, payload)))
        results = await self._run_stages(stages)

        headers = {
            "content-type": content_type,
            "X-Request-ID": ctx.request_id,
            "X-Cache": "MISS",
            "X-Request-Cost": format_request_cost(attribution.cost_usd),
            "X-Response-Time": f"{latency_ms}ms",
        }
        if attribution.usage is not None:
            headers["X-Tokens-Used"] = str(attribution.total_tokens)
        headers.update(_rate_limit_headers(ctx.admission))

        self.request_logger.log_request(
            request_id=ctx.request_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            outcome=state,
            status_code=upstream.status_code,
            error_code=ErrorCode.BAD_GATEWAY.value if state == "failed" else None,
            provider=ctx.provider.name,
            principal_id=ctx.principal.id,
            user_id=ctx.principal.user_id,
            latency_ms=latency_ms,
            cost_usd=attribution.cost_usd,
            tokens_used=attribution.total_tokens,
            model=attribution.model,
            level="WARNING" if upstream.status_code >= 500 else "INFO",
        )
        return ProxyResult(upstream.status_code, payload.encode("utf-8"), headers, state, results)

    def _attribute(self, provider: Provider, upstream: UpstreamResponse) -> CostAttribution:
        if not self.cost_tracking or not upstream.is_json:
            return NOT_AN_AI_RESPONSE
        attribution = self.cost_model.attribute(upstream.body)
        if attribution.is_ai_response and not attribution.priced:
            unpriced_responses_total.labels(provider=provider.name).inc()
        return attribution

    async def _store_in_cache(self, ctx: RequestContext, payload: str) -> None:
        if not await self.cache.store(ctx.endpoint, ctx.body, payload):
            raise StoreUnavailable("cache entry was not written")

    async def _run_stages(self, stages: Sequence[Tuple[str, Awaitable[Any]]]) -> List[StageResult]:
        return list(await asyncio.gather(*(self._run_stage(name, aw) for name, aw in stages)))

    async def _run_stage(self, name: str, awaitable: Awaitable[Any]) -> StageResult:
        """Run one best-effort stage; a failure is logged and counted, never raised."""
        try:
            await asyncio.wait_for(awaitable, timeout=self.side_effect_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Best-effort stage {name} timed out after {self.side_effect_timeout_s}s")
            side_effect_failures_total.labels(stage=name).inc()
            return StageResult(stage=name, ok=False, error="timeout")
        except Exception as e:
            logger.warning(f"Best-effort stage {name} failed: {e}", exc_info=True)
            side_effect_failures_total.labels(stage=name).inc()
            return StageResult(stage=name, ok=False, error=str(e))
        return StageResult(stage=name, ok=True)

    @staticmethod
    def _usage_record(
        ctx: RequestContext,
        status_code: int,
        latency_ms: int,
        cost_usd: float,
        tokens_used: int,
        model: Optional[str],
        cached: bool,
    ) -> UsageRecord:
        return UsageRecord(
            request_id=ctx.request_id,
            user_id=ctx.principal.user_id,
            principal_id=ctx.principal.id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            status_code=status_code,
            latency_ms=latency_ms,
            cost_usd=cost_usd,
            tokens_used=tokens_used,
            model=model,
            cached=cached,
            timestamp=UsageRecord.now(),
        )

    def _reject(self, ctx: RequestContext, error: GatewayError) -> ProxyResult:
        rejections_total.labels(code=error.code.value).inc()
        headers = {"content-type": JSON_CONTENT_TYPE, "X-Request-ID": ctx.request_id}
        headers.update(error.headers)

        self.request_logger.log_request(
            request_id=ctx.request_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            outcome="rejected",
            status_code=error.status_code,
            provider=ctx.provider.name if ctx.provider else None,
            principal_id=ctx.principal.id if ctx.principal else None,
            user_id=ctx.principal.user_id if ctx.principal else None,
            error_code=error.code.value,
            latency_ms=ctx.elapsed_ms(),
            level="WARNING",
        )
        content = serialize_payload(error.to_body()).encode("utf-8")
        return ProxyResult(error.status_code, content, headers, "rejected")

    def _internal_error(self, ctx: RequestContext) -> ProxyResult:
        rejections_total.labels(code=ErrorCode.INTERNAL_ERROR.value).inc()
        body = InternalErrorResponse(
            message="Failed to process proxy request",
            request_id=ctx.request_id,
        )
        self.request_logger.log_request(
            request_id=ctx.request_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            outcome="failed",
            status_code=500,
            principal_id=ctx.principal.id if ctx.principal else None,
            error_code=ErrorCode.INTERNAL_ERROR.value,
            latency_ms=ctx.elapsed_ms(),
            level="ERROR",
        )
        return ProxyResult(
            500,
            serialize_payload(body.model_dump()).encode("utf-8"),
            {"content-type": JSON_CONTENT_TYPE, "X-Request-ID": ctx.request_id},
            "failed",
        )


def _rate_limit_headers(admission: Optional[Admission]) -> Dict[str, str]:
    if admission is None:
        return {}
    reset = datetime.fromtimestamp(admission.reset_at, tz=timezone.utc)
    return {
        "X-RateLimit-Limit": str(admission.limit),
        "X-RateLimit-Remaining": str(admission.remaining),
        "X-RateLimit-Reset": reset.isoformat(),
    }


def _model_of(payload: str) -> Optional[str]:
    try:
        body = json.loads(payload)
    except ValueError:
        return None
    model = body.get("model") if isinstance(body, dict) else None
    return str(model) if model else None
