"""Error codes, status normalization and gateway exceptions for Tollgate."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Normalized error codes for Tollgate.

    Used in response bodies, logs, and metrics.
    """
    # Client errors (4xx)
    UNAUTHORIZED = "UNAUTHORIZED"
    BAD_REQUEST = "BAD_REQUEST"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PROVIDER_UNRESOLVED = "PROVIDER_UNRESOLVED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"

    # Upstream errors
    BAD_GATEWAY = "BAD_GATEWAY"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class UpstreamStatus(str, Enum):
    """Normalized upstream status codes for metrics.

    Upstream status codes are normalized to reduce Prometheus cardinality.
    Actual status codes are preserved in logs and usage records.
    """
    OK = "200"
    BAD_REQUEST = "400"
    UNAUTHORIZED = "401"
    NOT_FOUND = "404"
    TOO_MANY_REQUESTS = "429"
    CLIENT_ERROR_OTHER = "4xx"
    INTERNAL_SERVER_ERROR = "500"
    NOT_IMPLEMENTED = "501"
    BAD_GATEWAY = "502"
    SERVER_ERROR_OTHER = "5xx"
    SUCCESS_OTHER = "2xx"
    UNKNOWN = "unknown"

    @classmethod
    def normalize(cls, status_code: Optional[int]) -> str:
        """Normalize HTTP status code to enum value."""
        if status_code is None:
            return cls.UNKNOWN.value

        for member in (
            cls.OK,
            cls.BAD_REQUEST,
            cls.UNAUTHORIZED,
            cls.NOT_FOUND,
            cls.TOO_MANY_REQUESTS,
            cls.INTERNAL_SERVER_ERROR,
            cls.NOT_IMPLEMENTED,
            cls.BAD_GATEWAY,
        ):
            if member.value == str(status_code):
                return member.value

        if 200 <= status_code < 300:
            return cls.SUCCESS_OTHER.value
        elif 400 <= status_code < 500:
            return cls.CLIENT_ERROR_OTHER.value
        elif 500 <= status_code < 600:
            return cls.SERVER_ERROR_OTHER.value
        return cls.UNKNOWN.value


class GatewayError(Exception):
    """Base class for errors that end a request with a gateway-generated response."""

    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    title: str = "Internal Server Error"

    def __init__(self, message: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        """Response body for this error."""
        return {
            "error": self.title,
            "code": self.code.value,
            "message": self.message,
        }


class AuthenticationError(GatewayError):
    """Missing, unknown or deactivated API key. Never retried."""

    status_code = 401
    code = ErrorCode.UNAUTHORIZED
    title = "Unauthorized"


class RateLimitExceeded(GatewayError):
    """Caller exceeded its admission quota for the current window."""

    status_code = 429
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    title = "Too Many Requests"

    def __init__(
        self,
        message: str,
        retry_after_s: int,
        limit: int,
        remaining: int = 0,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message, headers)
        self.retry_after_s = retry_after_s
        self.limit = limit
        self.remaining = remaining

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body.update(
            {
                "retryAfter": self.retry_after_s,
                "limit": self.limit,
                "remaining": self.remaining,
            }
        )
        return body


class ProviderUnresolved(GatewayError):
    """No upstream provider could be determined from the request path."""

    status_code = 400
    code = ErrorCode.PROVIDER_UNRESOLVED
    title = "Bad Request"


class InvalidRequestBody(GatewayError):
    """Request body is not valid JSON."""

    status_code = 400
    code = ErrorCode.BAD_REQUEST
    title = "Bad Request"


class BudgetExceeded(GatewayError):
    """Daily budget would be exceeded (only raised when the pre-check is enabled)."""

    status_code = 402
    code = ErrorCode.BUDGET_EXCEEDED
    title = "Payment Required"


class ForwardingFailure(GatewayError):
    """Upstream could not be reached or the call could not be prepared.

    Raised only inside the forwarder, which converts it to a synthetic 502
    response.
    """

    status_code = 502
    code = ErrorCode.BAD_GATEWAY
    title = "Bad Gateway"


class StoreUnavailable(Exception):
    """External store call failed or timed out."""
