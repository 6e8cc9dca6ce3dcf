"""Anthropic "message" response shape adapter."""
import uuid
from typing import Any, Dict, Optional

from tollgate.adapters.llm.base import Usage, UsageAdapter


class MessageUsageAdapter(UsageAdapter):
    """Messages API shape: `type == "message"` plus `usage.input_tokens/output_tokens`.

    Total tokens are not reported by this shape and are computed.
    """

    shape = "message"
    default_model = "claude-3-sonnet-20240229"

    def matches(self, body: Dict[str, Any]) -> bool:
        usage = self._usage_block(body)
        if usage is None or not body.get("model"):
            return False
        return body.get("type") == "message" and ("input_tokens" in usage or "output_tokens" in usage)

    def extract(self, body: Dict[str, Any]) -> Usage:
        usage = self._usage_block(body) or {}
        input_tokens = self.tokens(usage, "input_tokens")
        output_tokens = self.tokens(usage, "output_tokens")
        return Usage(
            shape=self.shape,
            model=str(body["model"]),
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )

    def synthetic_response(self, model: Optional[str], prompt_tokens: int, completion_tokens: int) -> Dict[str, Any]:
        return {
            "id": f"msg_{uuid.uuid4().hex[:24]}",
            "type": "message",
            "role": "assistant",
            "content": [
                {
                    "type": "text",
                    "text": "This is a synthetic response from the gateway mock backend.",
                }
            ],
            "model": model or self.default_model,
            "stop_reason": "end_turn",
            "stop_sequence": None,
            "usage": {
                "input_tokens": prompt_tokens,
                "output_tokens": completion_tokens,
            },
        }
