"""Middleware package for the throttle filter."""

from throttle.app.middleware.rate_limit import (
    ThrottleMiddleware,
    get_identity,
    require_rate_limit,
)

__all__ = [
    "ThrottleMiddleware",
    "get_identity",
    "require_rate_limit",
]
