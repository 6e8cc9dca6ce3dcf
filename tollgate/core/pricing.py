"""Per-token model pricing table.

Prices are USD per token (not per 1K tokens) and are held as Decimal so that
the per-token products do not pick up binary rounding noise.

Note: Pricing data last updated: 2025-02
For accurate pricing, refer to provider documentation:
- OpenAI: https://openai.com/pricing
- Anthropic: https://www.anthropic.com/pricing
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class ModelPricing:
    """Per-token prices for one model."""

    prompt: Decimal
    completion: Decimal

    @classmethod
    def per_token(cls, prompt: Number, completion: Number) -> "ModelPricing":
        return cls(prompt=Decimal(str(prompt)), completion=Decimal(str(completion)))

    @classmethod
    def per_1k(cls, prompt: Number, completion: Number) -> "ModelPricing":
        return cls(
            prompt=Decimal(str(prompt)) / 1000,
            completion=Decimal(str(completion)) / 1000,
        )


# Order matters only as the final tie-breaker between equally long matches.
DEFAULT_PRICING: Dict[str, ModelPricing] = {
    # OpenAI
    "gpt-4": ModelPricing.per_1k("0.03", "0.06"),
    "gpt-4-turbo": ModelPricing.per_1k("0.01", "0.03"),
    "gpt-4-turbo-preview": ModelPricing.per_1k("0.01", "0.03"),
    "gpt-4-0125-preview": ModelPricing.per_1k("0.01", "0.03"),
    "gpt-4-1106-preview": ModelPricing.per_1k("0.01", "0.03"),
    "gpt-3.5-turbo": ModelPricing.per_1k("0.0015", "0.002"),
    "gpt-3.5-turbo-16k": ModelPricing.per_1k("0.003", "0.004"),
    # Anthropic
    "claude-3-opus-20240229": ModelPricing.per_1k("0.015", "0.075"),
    "claude-3-sonnet-20240229": ModelPricing.per_1k("0.003", "0.015"),
    "claude-3-haiku-20240307": ModelPricing.per_1k("0.00025", "0.00125"),
    "claude-2.1": ModelPricing.per_1k("0.008", "0.024"),
    "claude-2": ModelPricing.per_1k("0.008", "0.024"),
    # Aliases
    "claude-opus": ModelPricing.per_1k("0.015", "0.075"),
    "claude-sonnet": ModelPricing.per_1k("0.003", "0.015"),
    "claude-haiku": ModelPricing.per_1k("0.00025", "0.00125"),
}


class PricingTable:
    """Static lookup of per-model token prices.

    Resolution rules, first hit wins:
    1. exact key
    2. case-insensitive exact key
    3. longest key that is a prefix of the model name
    4. longest key contained anywhere in the model name

    Equally long candidates are broken by table order.
    """

    def __init__(self, entries: Optional[Mapping[str, ModelPricing]] = None):
        self._entries: Dict[str, ModelPricing] = dict(
            DEFAULT_PRICING if entries is None else entries
        )

    @classmethod
    def with_overrides(cls, overrides: Mapping[str, Tuple[Number, Number]]) -> "PricingTable":
        """Built-in table plus per-token (prompt, completion) overrides."""
        table = cls()
        for model, (prompt, completion) in overrides.items():
            table.set(model, ModelPricing.per_token(prompt, completion))
        return table

    def set(self, model: str, pricing: ModelPricing) -> None:
        self._entries[model] = pricing

    def __contains__(self, model: str) -> bool:
        return model in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def price_model(self, name: str) -> Optional[ModelPricing]:
        """Resolve pricing for a model name, or None if unknown."""
        if not name:
            return None

        pricing = self._entries.get(name)
        if pricing is not None:
            return pricing

        name_lower = name.lower()
        lowered: List[Tuple[str, ModelPricing]] = [
            (key.lower(), value) for key, value in self._entries.items()
        ]

        for key, value in lowered:
            if key == name_lower:
                return value

        best = self._longest(
            (key, value) for key, value in lowered if name_lower.startswith(key)
        )
        if best is not None:
            return best

        return self._longest((key, value) for key, value in lowered if key in name_lower)

    @staticmethod
    def _longest(candidates: Iterable[Tuple[str, ModelPricing]]) -> Optional[ModelPricing]:
        best_key = None
        best_value = None
        for key, value in candidates:
            # Strictly longer only, so earlier entries win ties
            if best_key is None or len(key) > len(best_key):
                best_key, best_value = key, value
        return best_value

    def supported_models(self) -> List[str]:
        return list(self._entries.keys())

    def is_supported(self, name: str) -> bool:
        return self.price_model(name) is not None

    def compare(self, total_tokens: int) -> List[Tuple[str, float]]:
        """Cost of every table model for a token count, cheapest first.

        Uses a 50/50 prompt/completion split.
        """
        prompt_tokens = total_tokens // 2
        completion_tokens = total_tokens - prompt_tokens
        results = []
        for model, pricing in self._entries.items():
            cost = pricing.prompt * prompt_tokens + pricing.completion * completion_tokens
            results.append((model, float(cost)))
        results.sort(key=lambda item: item[1])
        return results


def format_cost(cost_usd: float, places: int = 4) -> str:
    """Format cost as a USD string."""
    return f"${cost_usd:.{places}f}"
