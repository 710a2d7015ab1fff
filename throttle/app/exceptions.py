"""Custom exceptions for the throttle filter."""

from typing import Any


class ThrottleException(Exception):
    """Base class for throttle exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Throttle error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(ThrottleException):
    """Raised when throttle options are invalid at construction time.

    Covers missing or negative burst/rate, partial overrides and a
    violation of the "exactly one of ip, xff, username" rule. Never retried.
    """
    status_code = 500

    def __init__(self, detail: str = "Invalid throttle options", errors: list[Any] | None = None):
        self.detail = detail
        self.errors = errors or []
        super().__init__(detail)


class MissingIdentityError(ThrottleException):
    """Raised when the configured identity attribute is absent on a request.

    Distinct from a rate limit rejection: the filter cannot tell who is
    calling, so the host should treat it as a server-side problem.
    Maps to HTTP 500 Internal Server Error.
    """
    status_code = 500

    def __init__(self, mode: str | None = None, detail: str = "Invalid throttle configuration"):
        self.mode = mode
        self.detail = detail
        super().__init__(detail)


class RateExceededError(ThrottleException):
    """Raised when a key has run out of tokens.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        message: str,
        rate: float,
        retry_after: float | None = None,
        result: Any = None,
    ):
        self.rate = rate
        self.retry_after = retry_after
        self.result = result
        super().__init__(message)
