"""Rate limiting engine.

Holds the token bucket, the bounded bucket table, override resolution and
the limiter that combines them.
"""

from throttle.app.ratelimit.limiter import RateLimiter, format_rate
from throttle.app.ratelimit.models import Override, Policy, RateLimitResult, TokenBucket
from throttle.app.ratelimit.policy import PolicyResolver, classify_override_key
from throttle.app.ratelimit.table import TokenStore, TokenTable

__all__ = [
    # Models
    "TokenBucket",
    "Override",
    "Policy",
    "RateLimitResult",
    # Storage
    "TokenStore",
    "TokenTable",
    # Policy
    "PolicyResolver",
    "classify_override_key",
    # Limiter
    "RateLimiter",
    "format_rate",
]
