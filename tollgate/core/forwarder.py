"""Upstream provider registry and request forwarding."""
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from tollgate.adapters.llm.factory import get_adapter
from tollgate.core.errors import ForwardingFailure
from tollgate.metrics.prometheus import upstream_failures_total

logger = logging.getLogger(__name__)

# Client headers passed through to the provider; everything else is dropped
FORWARDED_HEADERS = ("user-agent", "accept")

# Encodings httpx decodes without optional extras; replaces the client's accept-encoding
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"

# Gateway-specific path prefixes removed before forwarding
GATEWAY_PREFIXES = ("/api", "/openai", "/anthropic")

MOCK_ENDPOINTS = ("/chat/completions", "/messages")


@dataclass(frozen=True)
class Provider:
    """An upstream completion provider."""

    name: str
    base_url: str
    api_key: Optional[str] = None
    auth_scheme: str = "bearer"
    auth_header: str = "Authorization"
    extra_headers: Dict[str, str] = field(default_factory=dict)
    path_prefix: str = "/v1"
    primary: bool = False


def default_providers(openai_key: Optional[str] = None, anthropic_key: Optional[str] = None) -> List[Provider]:
    return [
        Provider(
            name="openai",
            base_url="https://api.openai.com",
            api_key=openai_key,
            primary=True,
        ),
        Provider(
            name="anthropic",
            base_url="https://api.anthropic.com",
            api_key=anthropic_key,
            auth_scheme="header",
            auth_header="x-api-key",
            extra_headers={"anthropic-version": "2023-06-01"},
        ),
    ]


@dataclass
class UpstreamResponse:
    """Upstream reply, or a synthetic one when the upstream was unreachable.

    `body` is the decoded JSON value for JSON responses, else the raw text.
    """

    status_code: int
    headers: Dict[str, str]
    body: Any
    latency_ms: int
    synthetic: bool = False

    @property
    def is_json(self) -> bool:
        return not isinstance(self.body, str)


class ProviderRegistry:
    """Named providers plus the path-based resolution rules."""

    def __init__(self, providers: Iterable[Provider]):
        self._providers: Dict[str, Provider] = {p.name: p for p in providers}
        primaries = [p for p in self._providers.values() if p.primary]
        if primaries:
            self.primary: Optional[Provider] = primaries[0]
        else:
            self.primary = self._providers.get("openai")

    def get(self, name: str) -> Optional[Provider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers)

    def resolve(self, path: str) -> Optional[Provider]:
        """Pick the provider for a gateway endpoint path.

        Order: explicit /<provider>/ prefix, /v1/messages (message shape),
        any other /v1/ path (primary), then chat/completions or completions
        anywhere in the path (primary).
        """
        for name, provider in self._providers.items():
            if path.startswith(f"/{name}/"):
                return provider

        if path.startswith("/v1/messages"):
            return self._providers.get("anthropic")

        if path.startswith("/v1/"):
            return self.primary

        if "chat/completions" in path or "completions" in path:
            return self.primary

        return None


def normalize_path(path: str, provider: Provider) -> str:
    """Strip gateway prefixes and add the provider's required prefix."""
    normalized = path
    for prefix in GATEWAY_PREFIXES:
        if normalized == prefix or normalized.startswith(prefix + "/"):
            normalized = normalized[len(prefix):]

    if not normalized.startswith("/"):
        normalized = "/" + normalized

    required = provider.path_prefix.rstrip("/")
    if required and not (normalized == required or normalized.startswith(required + "/")):
        normalized = required + normalized

    return normalized


def prepare_headers(provider: Provider, client_headers: Mapping[str, str]) -> Dict[str, str]:
    """Provider auth plus the allow-listed client headers."""
    if not provider.api_key:
        raise ForwardingFailure(f"API key not configured for {provider.name}")

    headers = {"Content-Type": "application/json"}
    if provider.auth_scheme == "bearer":
        headers[provider.auth_header] = f"Bearer {provider.api_key}"
    else:
        headers[provider.auth_header] = provider.api_key
    headers.update(provider.extra_headers)

    lowered = {k.lower(): v for k, v in client_headers.items()}
    for name in FORWARDED_HEADERS:
        if lowered.get(name):
            headers[name] = lowered[name]
    headers["accept-encoding"] = UPSTREAM_ACCEPT_ENCODING

    return headers


class BackendForwarder:
    """Forwards calls to the resolved provider.

    Never raises for transport problems: any failure to reach the provider
    becomes a synthetic 502 response.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 60.0,
        connect_timeout_s: float = 5.0,
        mock: bool = False,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            registry: Provider registry
            client: Shared HTTP client (created when not given)
            timeout_s: Total upstream timeout
            connect_timeout_s: Upstream connect timeout
            mock: Answer with synthetic payloads, no network
            rng: Random source for synthetic token counts
        """
        self.registry = registry
        self.mock = mock
        self.rng = rng or random.Random()
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    def resolve_provider(self, path: str) -> Optional[Provider]:
        return self.registry.resolve(path)

    async def forward(
        self,
        provider: Provider,
        path: str,
        method: str,
        headers: Mapping[str, str],
        body: Any,
    ) -> UpstreamResponse:
        start = time.monotonic()
        upstream_path = normalize_path(path, provider)

        if self.mock:
            logger.info(f"Using mock backend response: provider={provider.name} endpoint={upstream_path}")
            return self._mock_response(provider, upstream_path, body, start)

        try:
            prepared = prepare_headers(provider, headers)
            content = json.dumps(body).encode() if body is not None else None
            logger.debug(
                f"Forwarding request to backend: provider={provider.name} "
                f"endpoint={upstream_path} method={method}"
            )
            response = await self.client.request(
                method=method.upper(),
                url=f"{provider.base_url.rstrip('/')}{upstream_path}",
                headers=prepared,
                content=content,
            )
        except (httpx.HTTPError, ForwardingFailure) as e:
            latency_ms = _elapsed_ms(start)
            logger.error(
                f"Error forwarding request to backend: provider={provider.name} "
                f"endpoint={upstream_path} latency_ms={latency_ms}: {e}",
                exc_info=True,
            )
            upstream_failures_total.labels(provider=provider.name).inc()
            return self._bad_gateway(provider, str(e), latency_ms)

        latency_ms = _elapsed_ms(start)
        logger.debug(
            f"Backend response received: provider={provider.name} endpoint={upstream_path} "
            f"status={response.status_code} latency_ms={latency_ms}"
        )
        return UpstreamResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=_decode_body(response),
            latency_ms=latency_ms,
        )

    def _mock_response(self, provider: Provider, upstream_path: str, body: Any, start: float) -> UpstreamResponse:
        adapter = get_adapter(provider.name)
        if adapter is None or not any(e in upstream_path for e in MOCK_ENDPOINTS):
            return UpstreamResponse(
                status_code=501,
                headers={"content-type": "application/json"},
                body={
                    "error": {
                        "message": "Mock backend only supports /chat/completions and /messages",
                        "type": "not_supported",
                    }
                },
                latency_ms=_elapsed_ms(start),
                synthetic=True,
            )

        model = body.get("model") if isinstance(body, dict) else None
        prompt_tokens = self.rng.randrange(50, 550)
        completion_tokens = self.rng.randrange(50, 250)
        return UpstreamResponse(
            status_code=200,
            headers={"content-type": "application/json"},
            body=adapter.synthetic_response(model, prompt_tokens, completion_tokens),
            latency_ms=_elapsed_ms(start),
            synthetic=True,
        )

    @staticmethod
    def _bad_gateway(provider: Provider, details: str, latency_ms: int) -> UpstreamResponse:
        return UpstreamResponse(
            status_code=502,
            headers={"content-type": "application/json"},
            body={
                "error": "Bad Gateway",
                "message": f"Failed to reach {provider.name} API",
                "details": details,
            },
            latency_ms=latency_ms,
            synthetic=True,
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Upstream sent invalid JSON with content-type {content_type}")
    return response.text


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
