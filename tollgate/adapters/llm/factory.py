"""Registry and structural dispatch for usage adapters."""
from typing import Any, List, Optional

from tollgate.adapters.llm.anthropic import MessageUsageAdapter
from tollgate.adapters.llm.base import Usage, UsageAdapter
from tollgate.adapters.llm.openai import ChatUsageAdapter

# The message shape is checked first: its discriminator is stricter.
_ADAPTERS: List[UsageAdapter] = [MessageUsageAdapter(), ChatUsageAdapter()]

_PROVIDER_ADAPTERS = {
    "openai": _ADAPTERS[1],
    "anthropic": _ADAPTERS[0],
}


def detect_adapter(body: Any) -> Optional[UsageAdapter]:
    """Return the adapter whose shape matches the body, or None."""
    if not isinstance(body, dict):
        return None
    for adapter in _ADAPTERS:
        if adapter.matches(body):
            return adapter
    return None


def extract_usage(body: Any) -> Optional[Usage]:
    adapter = detect_adapter(body)
    if adapter is None:
        return None
    return adapter.extract(body)


def get_adapter(provider: str) -> Optional[UsageAdapter]:
    """Get the response adapter a provider answers with."""
    return _PROVIDER_ADAPTERS.get(provider.lower())
