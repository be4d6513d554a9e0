"""Custom exceptions for the rate limiting service."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from quotaguard.app.services.rate_limit.models import RateLimitResult


class RateLimitServiceError(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limit service error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(RateLimitServiceError):
    """Raised when the shared window store cannot be reached or times out.

    The evaluator converts this into a fail-open or fail-closed result; it
    only escapes on administrative paths such as reset.
    """
    status_code = 503

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        message = f"Window store unavailable during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class PolicyNotFoundError(RateLimitServiceError):
    """Raised when a caller references an undefined policy.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404

    def __init__(self, policy_name: str):
        self.policy_name = policy_name
        super().__init__(f"Rate limit policy not found: {policy_name!r}")


class InvalidConfigurationError(RateLimitServiceError):
    """Raised at load time when a policy definition is rejected."""
    status_code = 500

    def __init__(self, detail: str, policy_name: str | None = None):
        self.policy_name = policy_name
        self.detail = detail
        if policy_name:
            message = f"Invalid rate limit policy {policy_name!r}: {detail}"
        else:
            message = f"Invalid rate limit configuration: {detail}"
        super().__init__(message)


class StatisticsDataCorruptError(RateLimitServiceError):
    """Raised when persisted window entries cannot be parsed."""

    def __init__(self, key: str, detail: str):
        self.key = key
        self.detail = detail
        super().__init__(f"Corrupt rate limit data at {key}: {detail}")


class RateLimitExceededError(RateLimitServiceError):
    """Raised by integration helpers when a request is denied.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: "RateLimitResult"):
        self.result = result
        super().__init__(
            f"Rate limit exceeded for policy {result.policy_name!r}. "
            f"Retry after {result.retry_after:.0f} seconds."
        )
