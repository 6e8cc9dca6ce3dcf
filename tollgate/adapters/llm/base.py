"""Base usage adapter interface.

Each adapter recognises one upstream response shape and normalizes its token
usage into a single `Usage` record.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Usage:
    """Normalized token usage extracted from a provider response."""

    shape: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


def _token_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


class UsageAdapter(ABC):
    """Base class for provider response shape adapters."""

    # Shape tag carried into Usage.shape
    shape: str = ""

    @abstractmethod
    def matches(self, body: Dict[str, Any]) -> bool:
        """Structural discriminator: does the body have this adapter's shape?"""
        pass

    @abstractmethod
    def extract(self, body: Dict[str, Any]) -> Usage:
        """Extract usage from a body for which `matches` returned True."""
        pass

    @abstractmethod
    def synthetic_response(self, model: Optional[str], prompt_tokens: int, completion_tokens: int) -> Dict[str, Any]:
        """Build a shape-correct payload for mock mode."""
        pass

    @staticmethod
    def _usage_block(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        usage = body.get("usage")
        return usage if isinstance(usage, dict) else None

    @staticmethod
    def tokens(usage: Dict[str, Any], field: str) -> int:
        return _token_count(usage.get(field))
