"""Cost attribution for upstream AI responses."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from tollgate.adapters.llm.base import Usage
from tollgate.adapters.llm.factory import extract_usage
from tollgate.core.pricing import ModelPricing, PricingTable

logger = logging.getLogger(__name__)

# Rough token estimation: ~4 chars per token for English text
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class CostAttribution:
    """Result of pricing one upstream response.

    `priced` is False when the response carried usage for a model the pricing
    table does not know (tracked as zero cost).
    """

    is_ai_response: bool
    cost_usd: float = 0.0
    usage: Optional[Usage] = None
    priced: bool = False

    @property
    def model(self) -> Optional[str]:
        return self.usage.model if self.usage else None

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0


NOT_AN_AI_RESPONSE = CostAttribution(is_ai_response=False)


class CostModel:
    """Extracts token usage from provider responses and prices it."""

    def __init__(self, pricing: Optional[PricingTable] = None):
        self.pricing = pricing or PricingTable()

    def price_model(self, name: str) -> Optional[ModelPricing]:
        return self.pricing.price_model(name)

    def detect_usage(self, body: Any) -> Optional[Usage]:
        """Normalized usage, or None when the body is not an AI response."""
        try:
            return extract_usage(body)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to parse AI response usage: {e}", exc_info=True)
            return None

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """USD cost for a token count. Unknown models cost 0.0."""
        pricing = self.price_model(model)
        if pricing is None:
            logger.warning(f"Unknown model: {model}. Cannot calculate cost.")
            return 0.0
        return float(self._exact_cost(pricing, prompt_tokens, completion_tokens))

    @staticmethod
    def _exact_cost(pricing: ModelPricing, prompt_tokens: int, completion_tokens: int) -> Decimal:
        return pricing.prompt * prompt_tokens + pricing.completion * completion_tokens

    def attribute(self, body: Any) -> CostAttribution:
        """Detect usage in a response body and price it."""
        usage = self.detect_usage(body)
        if usage is None:
            return NOT_AN_AI_RESPONSE

        pricing = self.price_model(usage.model)
        if pricing is None:
            logger.warning(f"Unknown model: {usage.model}. Usage tracked at zero cost.")
            return CostAttribution(is_ai_response=True, usage=usage, priced=False)

        cost = float(self._exact_cost(pricing, usage.prompt_tokens, usage.completion_tokens))
        logger.debug(
            f"{usage.shape} response detected: model={usage.model} "
            f"tokens={usage.total_tokens} cost={cost}"
        )
        return CostAttribution(is_ai_response=True, cost_usd=cost, usage=usage, priced=True)

    def estimate_request_cost(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int = 100,
    ) -> float:
        """Estimate cost before making a request (for budget pre-checks)."""
        return self.cost(model, input_tokens, output_tokens)

    def estimate_from_body(self, body: Any) -> float:
        """Estimate cost from a chat/messages request body.

        Rough estimation: ~4 chars per token over message contents, and
        `max_tokens` (or 100) completion tokens.
        """
        if not isinstance(body, dict) or not body.get("model"):
            return 0.0

        total_chars = 0
        for message in body.get("messages") or []:
            if not isinstance(message, dict):
                continue
            content = message.get("content", "")
            if isinstance(content, str):
                total_chars += len(content)
            elif isinstance(content, list):
                total_chars += sum(
                    len(block.get("text", "")) for block in content if isinstance(block, dict)
                )

        max_tokens = body.get("max_tokens")
        output_tokens = max_tokens if isinstance(max_tokens, int) and max_tokens > 0 else 100
        return self.estimate_request_cost(
            str(body["model"]), total_chars // CHARS_PER_TOKEN, output_tokens
        )

    def cost_from_total(self, model: str, total_tokens: int) -> float:
        """Cost from a total token count, assuming a 50/50 split."""
        prompt_tokens = total_tokens // 2
        return self.cost(model, prompt_tokens, total_tokens - prompt_tokens)

    def breakdown(self, model: str, prompt_tokens: int, completion_tokens: int) -> Dict[str, Any]:
        """Cost breakdown for reporting."""
        prompt_cost = self.cost(model, prompt_tokens, 0)
        completion_cost = self.cost(model, 0, completion_tokens)
        total_cost = self.cost(model, prompt_tokens, completion_tokens)
        return {
            "total_cost": total_cost,
            "prompt_cost": prompt_cost,
            "completion_cost": completion_cost,
            "breakdown": (
                f"Prompt: ${prompt_cost:.6f} ({prompt_tokens} tokens) + "
                f"Completion: ${completion_cost:.6f} ({completion_tokens} tokens) = "
                f"Total: ${total_cost:.6f}"
            ),
        }
