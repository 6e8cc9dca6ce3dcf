"""Tests for core/pricing.py."""
from decimal import Decimal

import pytest

from tollgate.core.pricing import DEFAULT_PRICING, ModelPricing, PricingTable, format_cost


@pytest.fixture
def table():
    return PricingTable()


def test_exact_match(table):
    pricing = table.price_model("gpt-4")
    assert pricing.prompt == Decimal("0.00003")
    assert pricing.completion == Decimal("0.00006")


def test_case_insensitive_match(table):
    assert table.price_model("GPT-4") == table.price_model("gpt-4")
    assert table.price_model("Claude-2.1") == table.price_model("claude-2.1")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("gpt-4-0613", "gpt-4"),
        ("gpt-4-turbo-2024-04-09", "gpt-4-turbo"),
        ("gpt-3.5-turbo-16k-0613", "gpt-3.5-turbo-16k"),
        ("gpt-3.5-turbo-0125", "gpt-3.5-turbo"),
        ("claude-2.1-experimental", "claude-2.1"),
    ],
)
def test_longest_prefix_wins(table, name, expected):
    assert table.price_model(name) == DEFAULT_PRICING[expected]


def test_substring_match_when_no_prefix(table):
    """Fine-tuned names embed the base model."""
    assert table.price_model("ft:gpt-3.5-turbo:acme:custom:abc123") == DEFAULT_PRICING["gpt-3.5-turbo"]


def test_prefix_rule_beats_substring_rule():
    table = PricingTable(
        {
            "turbo": ModelPricing.per_token("1", "1"),
            "gpt": ModelPricing.per_token("2", "2"),
        }
    )
    # "gpt" is a prefix; the longer "turbo" is only contained
    assert table.price_model("gpt-turbo").prompt == Decimal("2")


def test_ties_broken_by_table_order():
    table = PricingTable(
        {
            "abc": ModelPricing.per_token("1", "1"),
            "xyz": ModelPricing.per_token("2", "2"),
        }
    )
    assert table.price_model("model-abc-xyz").prompt == Decimal("1")


@pytest.mark.parametrize("name", ["llama-3-70b", "", "claude-3-5-sonnet-20240620"])
def test_unknown_model(table, name):
    assert table.price_model(name) is None
    assert table.is_supported(name) is False


def test_overrides_add_and_replace():
    table = PricingTable.with_overrides(
        {
            "gpt-4": (0.0001, 0.0002),
            "mistral-large": ("0.000004", "0.000012"),
        }
    )
    assert table.price_model("gpt-4").prompt == Decimal("0.0001")
    assert table.price_model("mistral-large-latest").completion == Decimal("0.000012")
    assert len(table) == len(DEFAULT_PRICING) + 1


def test_supported_models(table):
    models = table.supported_models()
    assert len(models) == 15
    assert "claude-haiku" in models
    assert "gpt-4" in table


def test_compare_sorted_cheapest_first(table):
    results = table.compare(1000)
    costs = [cost for _, cost in results]
    assert costs == sorted(costs)
    assert results[0][0] in ("claude-3-haiku-20240307", "claude-haiku")
    assert results[-1][1] == pytest.approx(0.045)


def test_format_cost():
    assert format_cost(0.0036) == "$0.0036"
    assert format_cost(1.5, places=2) == "$1.50"
