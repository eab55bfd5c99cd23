"""Custom exceptions for verbaguard."""

from datetime import datetime, timezone


def format_reset_time(reset_time_ms: int) -> str:
    """Render an epoch-ms reset time as an ISO-8601 UTC timestamp."""
    moment = datetime.fromtimestamp(reset_time_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class VerbaGuardException(Exception):
    """Base class for verbaguard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiting error"):
        self.message = message
        super().__init__(message)


class PolicyConfigurationError(VerbaGuardException, ValueError):
    """Raised when a rate limit policy is invalid.

    Zero or negative windows and limits are rejected when the policy is
    built, never at check time.
    """
    status_code = 500


class StoreUnavailableError(VerbaGuardException):
    """Raised by a store adapter that cannot serve a command.

    Limiters translate it into a fail-open result.
    """
    status_code = 503

    def __init__(self, detail: str = "Key-value store unavailable"):
        super().__init__(detail)


class RateLimitExceededError(VerbaGuardException):
    """Raised when a request is throttled.

    Carries the limiter result so the handler can build the standard
    throttling headers. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result, retry_after: int):
        self.result = result
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded")

    @classmethod
    def from_result(cls, result, now_ms: int) -> "RateLimitExceededError":
        return cls(result, result.retry_after_seconds(now_ms))

    def to_response(self) -> dict:
        """Body of the 429 response."""
        return {
            "error": "Rate limit exceeded",
            "retryAfter": self.retry_after,
        }

    def headers(self) -> dict[str, str]:
        """Throttling headers for the 429 response."""
        headers = rate_limit_headers(self.result)
        headers["Retry-After"] = str(self.retry_after)
        return headers


def rate_limit_headers(result) -> dict[str, str]:
    """Informational X-RateLimit-* headers for a limiter result."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": format_reset_time(result.reset_time),
    }
