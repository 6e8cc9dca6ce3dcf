"""OpenAI "chat" response shape adapter."""
import time
import uuid
from typing import Any, Dict, Optional

from tollgate.adapters.llm.base import Usage, UsageAdapter


class ChatUsageAdapter(UsageAdapter):
    """Chat completion shape: `model` plus `usage.prompt_tokens/completion_tokens/total_tokens`."""

    shape = "chat"
    default_model = "gpt-3.5-turbo"

    def matches(self, body: Dict[str, Any]) -> bool:
        usage = self._usage_block(body)
        if usage is None or not body.get("model"):
            return False
        return "prompt_tokens" in usage or "completion_tokens" in usage or "total_tokens" in usage

    def extract(self, body: Dict[str, Any]) -> Usage:
        usage = self._usage_block(body) or {}
        prompt_tokens = self.tokens(usage, "prompt_tokens")
        completion_tokens = self.tokens(usage, "completion_tokens")
        total_tokens = self.tokens(usage, "total_tokens") or prompt_tokens + completion_tokens
        return Usage(
            shape=self.shape,
            model=str(body["model"]),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )

    def synthetic_response(self, model: Optional[str], prompt_tokens: int, completion_tokens: int) -> Dict[str, Any]:
        return {
            "id": f"chatcmpl-{uuid.uuid4().hex[:24]}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model or self.default_model,
            "choices": [
                {
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": "This is a synthetic response from the gateway mock backend.",
                    },
                    "finish_reason": "stop",
                }
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
