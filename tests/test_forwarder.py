"""Tests for core/forwarder.py."""
import gzip
import json
import random

import httpx
import pytest

from tollgate.core.errors import ForwardingFailure
from tollgate.core.forwarder import (
    BackendForwarder,
    Provider,
    ProviderRegistry,
    default_providers,
    normalize_path,
    prepare_headers,
)


@pytest.fixture
def registry():
    return ProviderRegistry(default_providers(openai_key="sk-openai", anthropic_key="sk-ant"))


def make_forwarder(registry, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BackendForwarder(registry, client=client, **kwargs)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/openai/chat/completions", "openai"),
        ("/anthropic/v1/messages", "anthropic"),
        ("/anthropic/messages", "anthropic"),
        ("/v1/messages", "anthropic"),
        ("/v1/chat/completions", "openai"),
        ("/v1/embeddings", "openai"),
        ("/chat/completions", "openai"),
        ("/engines/davinci/completions", "openai"),
    ],
)
def test_resolve_provider(registry, path, expected):
    assert registry.resolve(path).name == expected


@pytest.mark.parametrize("path", ["/health", "/", "/models", "/anthropicx/messages"])
def test_unresolvable_paths(registry, path):
    assert registry.resolve(path) is None


def test_configured_primary_takes_generic_paths():
    providers = [
        Provider(name="openai", base_url="https://api.openai.com"),
        Provider(name="azure", base_url="https://example.azure.com", primary=True),
    ]
    registry = ProviderRegistry(providers)
    assert registry.resolve("/v1/chat/completions").name == "azure"
    assert registry.resolve("/openai/chat/completions").name == "openai"


@pytest.mark.parametrize(
    "path,provider,expected",
    [
        ("/openai/chat/completions", "openai", "/v1/chat/completions"),
        ("/v1/chat/completions", "openai", "/v1/chat/completions"),
        ("/api/v1/chat/completions", "openai", "/v1/chat/completions"),
        ("/chat/completions", "openai", "/v1/chat/completions"),
        ("/anthropic/v1/messages", "anthropic", "/v1/messages"),
        ("/anthropic/messages", "anthropic", "/v1/messages"),
        ("/v1/messages", "anthropic", "/v1/messages"),
        ("/v1", "openai", "/v1"),
    ],
)
def test_normalize_path(registry, path, provider, expected):
    assert normalize_path(path, registry.get(provider)) == expected


def test_openai_headers(registry):
    headers = prepare_headers(
        registry.get("openai"),
        {
            "User-Agent": "my-app/1.0",
            "accept": "application/json",
            "Cookie": "session=secret",
            "X-API-Key": "sk-test-alice",
            "Authorization": "Bearer client-token",
            "Accept-Encoding": "gzip, deflate, br, zstd",
        },
    )
    assert headers == {
        "Content-Type": "application/json",
        "Authorization": "Bearer sk-openai",
        "user-agent": "my-app/1.0",
        "accept": "application/json",
        "accept-encoding": "gzip, deflate",
    }


def test_anthropic_headers(registry):
    headers = prepare_headers(registry.get("anthropic"), {"accept-encoding": "br"})
    assert headers["x-api-key"] == "sk-ant"
    assert headers["anthropic-version"] == "2023-06-01"
    assert headers["accept-encoding"] == "gzip, deflate"
    assert "Authorization" not in headers


def test_missing_provider_key_raises():
    with pytest.raises(ForwardingFailure):
        prepare_headers(Provider(name="openai", base_url="https://api.openai.com"), {})


@pytest.mark.asyncio
async def test_forward_success(registry, chat_response):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["method"] = request.method
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=chat_response)

    forwarder = make_forwarder(registry, handler)
    provider = registry.get("openai")
    response = await forwarder.forward(
        provider, "/openai/chat/completions", "post", {}, {"model": "gpt-4", "messages": []}
    )

    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["method"] == "POST"
    assert seen["auth"] == "Bearer sk-openai"
    assert seen["body"] == {"model": "gpt-4", "messages": []}
    assert response.status_code == 200
    assert response.body == chat_response
    assert response.is_json is True
    assert response.synthetic is False
    await forwarder.close()


@pytest.mark.asyncio
async def test_compressed_upstream_body_is_metered(registry, chat_response):
    def handler(request: httpx.Request) -> httpx.Response:
        accepted = request.headers.get("accept-encoding", "")
        if "br" in accepted:
            # Opaque to a client without a brotli decoder
            return httpx.Response(
                200,
                content=b"\x1bi\x00\x10\x8c\x94c\xe50",
                headers={"content-type": "application/json", "content-encoding": "br"},
            )
        return httpx.Response(
            200,
            content=gzip.compress(json.dumps(chat_response).encode()),
            headers={"content-type": "application/json", "content-encoding": "gzip"},
        )

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(
        registry.get("openai"),
        "/v1/chat/completions",
        "POST",
        {"accept-encoding": "gzip, deflate, br"},
        {"model": "gpt-4"},
    )

    assert response.is_json is True
    assert response.body == chat_response


@pytest.mark.asyncio
async def test_forward_passes_upstream_errors_through(registry):
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(registry.get("openai"), "/v1/chat/completions", "POST", {}, {})
    assert response.status_code == 429
    assert response.body == {"error": {"message": "slow down"}}


@pytest.mark.asyncio
async def test_forward_non_json_body(registry):
    def handler(request):
        return httpx.Response(200, text="hello", headers={"content-type": "text/plain"})

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(registry.get("openai"), "/v1/models", "GET", {}, None)
    assert response.body == "hello"
    assert response.is_json is False


@pytest.mark.asyncio
async def test_transport_error_becomes_502(registry):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(registry.get("anthropic"), "/v1/messages", "POST", {}, {})

    assert response.status_code == 502
    assert response.synthetic is True
    assert response.body["error"] == "Bad Gateway"
    assert response.body["message"] == "Failed to reach anthropic API"
    assert "connection refused" in response.body["details"]


@pytest.mark.asyncio
async def test_timeout_becomes_502(registry):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(registry.get("openai"), "/v1/chat/completions", "POST", {}, {})
    assert response.status_code == 502


@pytest.mark.asyncio
async def test_missing_key_becomes_502():
    registry = ProviderRegistry(default_providers())

    def handler(request):
        raise AssertionError("upstream must not be called")

    forwarder = make_forwarder(registry, handler)
    response = await forwarder.forward(registry.get("openai"), "/v1/chat/completions", "POST", {}, {})
    assert response.status_code == 502
    assert "API key not configured" in response.body["details"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider,path,shape_key",
    [
        ("openai", "/v1/chat/completions", "choices"),
        ("anthropic", "/v1/messages", "content"),
    ],
)
async def test_mock_mode(registry, provider, path, shape_key):
    def handler(request):
        raise AssertionError("mock mode must not touch the network")

    forwarder = make_forwarder(registry, handler, mock=True, rng=random.Random(42))
    response = await forwarder.forward(registry.get(provider), path, "POST", {}, {"model": "gpt-4"})

    assert response.status_code == 200
    assert shape_key in response.body
    assert response.body["model"] == "gpt-4"
    usage = response.body["usage"]
    prompt = usage.get("prompt_tokens", usage.get("input_tokens"))
    completion = usage.get("completion_tokens", usage.get("output_tokens"))
    assert 50 <= prompt < 550
    assert 50 <= completion < 250


@pytest.mark.asyncio
async def test_mock_mode_unsupported_endpoint(registry):
    forwarder = make_forwarder(registry, lambda request: httpx.Response(200), mock=True)
    response = await forwarder.forward(registry.get("openai"), "/v1/embeddings", "POST", {}, {})
    assert response.status_code == 501
    assert response.body["error"]["type"] == "not_supported"
