"""YAML configuration loader with environment overrides."""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tollgate.config.schema import GatewayConfig

logger = logging.getLogger(__name__)

# Environment variable -> (section, field, parser)
_ENV_OVERRIDES = {
    "ENABLE_CACHING": ("features", "caching", "bool"),
    "CACHE_TTL_SECONDS": ("features", "cache_ttl_s", "int"),
    "ENABLE_RATE_LIMITING": ("features", "rate_limiting", "bool"),
    "ENABLE_BUDGET_ALERTS": ("features", "budget_alerts", "bool"),
    "ENABLE_COST_TRACKING": ("features", "cost_tracking", "bool"),
    "ENABLE_BUDGET_PRECHECK": ("features", "budget_precheck", "bool"),
    "DEFAULT_RATE_LIMIT_PER_MINUTE": ("defaults", "rate_limit_per_minute", "int"),
    "DEFAULT_DAILY_BUDGET_USD": ("defaults", "daily_budget_usd", "float"),
    "REDIS_URL": ("redis", "url", "str"),
}


def _parse(value: str, kind: str) -> Any:
    if kind == "bool":
        return value.strip().lower() == "true"
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    return value


class ConfigLoader:
    """Load and validate Tollgate configuration."""

    def __init__(self, config_path: str, environ: Optional[Dict[str, str]] = None):
        """
        Args:
            config_path: Path to YAML configuration file
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_path = Path(config_path)
        self.environ = environ if environ is not None else os.environ
        self.config: GatewayConfig = GatewayConfig()

    def load(self) -> GatewayConfig:
        """Load YAML (if present), apply environment overrides, validate."""
        raw_config: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML syntax in {self.config_path}: {e}") from e
        else:
            logger.info(f"Config file {self.config_path} not found, using defaults and environment")

        raw_config = self._apply_env_overrides(raw_config)

        try:
            self.config = GatewayConfig(**raw_config)
        except Exception as e:
            raise ValueError(f"Configuration validation failed in {self.config_path}: {e}") from e

        return self.config

    def _apply_env_overrides(self, raw_config: Dict[str, Any]) -> Dict[str, Any]:
        for env_var, (section, field, kind) in _ENV_OVERRIDES.items():
            value = self.environ.get(env_var)
            if value is None or value == "":
                continue
            try:
                raw_config.setdefault(section, {})[field] = _parse(value, kind)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_var}: {value!r}") from e

        mock = self.environ.get("MOCK_BACKEND")
        if mock:
            raw_config["mock_backend"] = _parse(mock, "bool")
        return raw_config

    def resolve_secret(self, value: Optional[str]) -> Optional[str]:
        """Resolve 'env:VAR_NAME' references against the environment."""
        if value and value.startswith("env:"):
            return self.environ.get(value[4:]) or None
        return value
