"""Tests for core/cost_model.py and the usage adapters."""
import pytest

from tollgate.adapters.llm.factory import detect_adapter, extract_usage, get_adapter
from tollgate.core.cost_model import CostModel


@pytest.fixture
def cost_model():
    return CostModel()


def test_chat_response_cost_is_exact(cost_model, chat_response):
    attribution = cost_model.attribute(chat_response)

    assert attribution.is_ai_response is True
    assert attribution.priced is True
    assert attribution.model == "gpt-4"
    assert attribution.total_tokens == 70
    assert attribution.cost_usd == 0.0036


def test_message_response_usage(cost_model, message_response):
    usage = cost_model.detect_usage(message_response)

    assert usage.shape == "message"
    assert usage.prompt_tokens == 100
    assert usage.completion_tokens == 200
    assert usage.total_tokens == 300
    # 100 * 0.00000025 + 200 * 0.00000125
    assert cost_model.attribute(message_response).cost_usd == pytest.approx(0.000275)


def test_message_shape_checked_before_chat_shape():
    """A body carrying both token vocabularies is a message response."""
    body = {
        "type": "message",
        "model": "claude-2",
        "usage": {"input_tokens": 1, "output_tokens": 2, "prompt_tokens": 10, "completion_tokens": 20},
    }
    assert detect_adapter(body).shape == "message"
    assert extract_usage(body).total_tokens == 3


def test_unknown_model_costs_zero(cost_model):
    body = {"model": "llama-3-70b", "usage": {"prompt_tokens": 10, "completion_tokens": 10}}
    attribution = cost_model.attribute(body)

    assert attribution.is_ai_response is True
    assert attribution.priced is False
    assert attribution.cost_usd == 0.0
    assert attribution.total_tokens == 20


@pytest.mark.parametrize(
    "body",
    [
        None,
        "plain text",
        [1, 2, 3],
        {"data": [{"id": "gpt-4"}]},
        {"model": "gpt-4"},
        {"usage": {"prompt_tokens": 1}},
        {"error": "Bad Gateway", "message": "Failed to reach openai API"},
    ],
)
def test_non_ai_bodies(cost_model, body):
    attribution = cost_model.attribute(body)
    assert attribution.is_ai_response is False
    assert attribution.cost_usd == 0.0
    assert attribution.model is None


def test_malformed_token_counts_read_as_zero():
    body = {"model": "gpt-4", "usage": {"prompt_tokens": "many", "completion_tokens": -5, "total_tokens": None}}
    usage = extract_usage(body)
    assert usage.prompt_tokens == 0
    assert usage.completion_tokens == 0
    assert usage.total_tokens == 0


def test_cost_unknown_model_never_raises(cost_model):
    assert cost_model.cost("not-a-model", 1000, 1000) == 0.0


def test_estimate_from_body(cost_model):
    body = {
        "model": "gpt-4",
        "messages": [{"role": "user", "content": "x" * 400}],
        "max_tokens": 50,
    }
    # 100 prompt tokens, 50 completion tokens
    assert cost_model.estimate_from_body(body) == pytest.approx(100 * 0.00003 + 50 * 0.00006)


def test_estimate_from_body_defaults(cost_model):
    body = {"model": "gpt-4", "messages": [{"role": "user", "content": [{"type": "text", "text": "y" * 40}]}]}
    assert cost_model.estimate_from_body(body) == pytest.approx(10 * 0.00003 + 100 * 0.00006)
    assert cost_model.estimate_from_body({"messages": []}) == 0.0


def test_cost_from_total_and_breakdown(cost_model):
    assert cost_model.cost_from_total("gpt-4", 70) == pytest.approx(35 * 0.00003 + 35 * 0.00006)

    breakdown = cost_model.breakdown("gpt-4", 20, 50)
    assert breakdown["total_cost"] == 0.0036
    assert breakdown["prompt_cost"] == pytest.approx(0.0006)
    assert "Total: $0.003600" in breakdown["breakdown"]


@pytest.mark.parametrize("provider,shape", [("openai", "chat"), ("anthropic", "message")])
def test_synthetic_responses_are_detected(cost_model, provider, shape):
    adapter = get_adapter(provider)
    body = adapter.synthetic_response(None, 120, 80)

    usage = cost_model.detect_usage(body)
    assert usage.shape == shape
    assert usage.model == adapter.default_model
    assert usage.total_tokens == 200
    assert cost_model.attribute(body).priced is True


def test_synthetic_response_keeps_requested_model():
    body = get_adapter("openai").synthetic_response("gpt-4", 60, 60)
    assert body["model"] == "gpt-4"
    assert get_adapter("unknown") is None
