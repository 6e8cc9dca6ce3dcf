"""Structured logging for Tollgate."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredLogger:
    """Structured JSON logger for proxied requests."""

    def __init__(self, name: str = "tollgate"):
        self.logger = logging.getLogger(name)

    def log_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        outcome: str = "served",  # "served", "rejected" or "failed"
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        principal_id: Optional[str] = None,
        user_id: Optional[str] = None,
        error_code: Optional[str] = None,
        latency_ms: int = 0,
        cost_usd: Optional[float] = None,
        tokens_used: int = 0,
        model: Optional[str] = None,
        cache_hit: bool = False,
        level: str = "INFO",
    ):
        """Log a request summary as one JSON line.

        Args:
            request_id: Unique request identifier
            endpoint: Gateway endpoint path (without /api)
            method: HTTP method
            outcome: "served", "rejected" or "failed"
            status_code: Status returned to the client
            provider: Resolved provider name
            principal_id: Authenticated principal
            user_id: Owning user
            error_code: Error code for rejected or failed requests
            latency_ms: Request latency in milliseconds
            cost_usd: Attributed cost
            tokens_used: Total tokens
            model: Model reported by the provider
            cache_hit: Whether the response was served from cache
            level: Log level (INFO, WARNING, ERROR)
        """
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "request_id": request_id,
            "endpoint": endpoint,
            "method": method,
            "outcome": outcome,
            "status_code": status_code,
            "latency_ms": latency_ms,
            "cache_hit": cache_hit,
        }

        if principal_id:
            log_entry["principal_id"] = principal_id
        if user_id:
            log_entry["user_id"] = user_id
        if provider:
            log_entry["provider"] = provider

        if outcome == "served":
            if cost_usd is not None:
                log_entry["cost_usd"] = cost_usd
            log_entry["tokens_used"] = tokens_used
            if model:
                log_entry["model"] = model
        elif error_code:
            log_entry["error_code"] = error_code

        log_message = json.dumps(log_entry, ensure_ascii=False)

        if level == "ERROR":
            self.logger.error(log_message)
        elif level == "WARNING":
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)


# Global structured logger instance
structured_logger = StructuredLogger()
