"""Caller identities and API key lookup."""
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity (API key) making a call.

    Read-only to the gateway; keys are administered elsewhere.
    """

    id: str
    user_id: str
    daily_budget_usd: float
    rate_limit_per_minute: Optional[int] = None
    active: bool = True


class KeyStore(ABC):
    """Key lookup service."""

    @abstractmethod
    async def find_by_key(self, api_key: str) -> Optional[Principal]:
        """Return the principal owning the key, or None."""
        pass


class InMemoryKeyStore(KeyStore):
    """Key store over a static mapping of API key -> Principal."""

    def __init__(self, principals: Optional[Dict[str, Principal]] = None):
        self._by_key: Dict[str, Principal] = dict(principals or {})

    def add(self, api_key: str, principal: Principal) -> None:
        self._by_key[api_key] = principal

    async def find_by_key(self, api_key: str) -> Optional[Principal]:
        if not api_key:
            return None
        # Compare every key so lookup time does not depend on which one matches
        found = None
        for candidate, principal in self._by_key.items():
            if hmac.compare_digest(candidate.encode(), api_key.encode()):
                found = principal
        return found

    def __len__(self) -> int:
        return len(self._by_key)


class ConfigKeyStore(InMemoryKeyStore):
    """Key store built from the `principals` configuration section."""

    @classmethod
    def from_config(
        cls,
        principals: Dict[str, Dict],
        default_daily_budget_usd: float,
        resolve_secret=None,
    ) -> "ConfigKeyStore":
        """
        Args:
            principals: {principal_id: {api_key, user_id, rate_limit_per_minute,
                daily_budget_usd, active}}
            default_daily_budget_usd: Budget for principals that set none
            resolve_secret: Optional callable resolving 'env:VAR' references
        """
        store = cls()
        for principal_id, entry in principals.items():
            api_key = entry.get("api_key")
            if resolve_secret is not None:
                api_key = resolve_secret(api_key)
            if not api_key:
                logger.warning(f"Skipping principal {principal_id}: api_key not set")
                continue

            budget = entry.get("daily_budget_usd")
            store.add(
                api_key,
                Principal(
                    id=principal_id,
                    user_id=entry["user_id"],
                    daily_budget_usd=default_daily_budget_usd if budget is None else float(budget),
                    rate_limit_per_minute=entry.get("rate_limit_per_minute"),
                    active=entry.get("active", True),
                ),
            )
        logger.info(f"Loaded {len(store)} principal(s) from configuration")
        return store
