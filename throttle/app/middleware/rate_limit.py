"""Rate limiting middleware.

Plugs a ``RateLimiter`` into the ASGI request pipeline. The identity the
limiter keys on depends on the configured mode:

- ``ip``: the peer address of the connection
- ``xff``: the raw ``X-Forwarded-For`` header (first address of the chain is used)
- ``username``: ``request.state.username``, set by an earlier auth layer, or
  the display name of an authenticated ``request.user``
"""

import math
from typing import Any, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from throttle.app.core.config import IdentityMode, build_options
from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.exceptions import ConfigurationError, MissingIdentityError
from throttle.app.ratelimit.limiter import RateLimiter, format_rate
from throttle.app.ratelimit.models import RateLimitResult

logger = get_logger(__name__)

FORWARDED_FOR_HEADER = "X-Forwarded-For"


def retry_after_seconds(value: Optional[float]) -> Optional[int]:
    """Whole seconds for a Retry-After header, at least 1; None if unknown."""
    if value is None or not math.isfinite(value):
        return None
    return max(1, math.ceil(value))


def get_identity(request: Request, mode: IdentityMode) -> Optional[str]:
    """Extract the throttling identity from a request.

    Args:
        request: Incoming request
        mode: Configured identity mode

    Returns:
        Identity string, or None if the request does not carry one
    """
    if mode is IdentityMode.IP:
        return request.client.host if request.client else None

    if mode is IdentityMode.XFF:
        return request.headers.get(FORWARDED_FOR_HEADER)

    username = getattr(request.state, "username", None)
    if username:
        return str(username)
    # Only present when AuthenticationMiddleware is installed
    user = request.scope.get("user")
    if user is not None and getattr(user, "is_authenticated", False):
        return getattr(user, "display_name", None) or None
    return None


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": format_rate(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
    }
    retry_after = retry_after_seconds(result.retry_after)
    if not result.allowed and retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return headers


def rate_limit_response(result: RateLimitResult) -> JSONResponse:
    """Build the 429 response for a rejected request."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": result.message,
            "retry_after": retry_after_seconds(result.retry_after),
        },
        headers=rate_limit_headers(result),
    )


class ThrottleMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce per-identity rate limits on requests.

    Takes either a prebuilt ``limiter`` or the throttle options as keyword
    arguments (``burst``, ``rate``, one of ``ip``/``xff``/``username``,
    ``overrides``, ``max_keys``, ``message``) plus an optional
    ``token_store``.

    Example:
        >>> app.add_middleware(ThrottleMiddleware, burst=10, rate=0.5, xff=True)
    """

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        token_store: Optional[Any] = None,
        **options: Any,
    ):
        super().__init__(app)
        if limiter is None:
            limiter = RateLimiter(build_options(**options), token_store=token_store)
        elif options or token_store is not None:
            raise ConfigurationError("Pass either a limiter or throttle options, not both")
        self.limiter = limiter

    def _get_client_key(self, request: Request) -> Optional[str]:
        return get_identity(request, self.limiter.mode)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        try:
            result = self.limiter.check(self._get_client_key(request))
        except MissingIdentityError as exc:
            logger.error(
                "Cannot determine throttling identity for request",
                extra=get_log_context(
                    mode=exc.mode,
                    path=request.url.path,
                    method=request.method,
                ),
            )
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": "throttle_configuration", "message": exc.detail},
            )

        if not result.allowed:
            return rate_limit_response(result)

        response = await call_next(request)

        if not result.unlimited:
            response.headers.update(rate_limit_headers(result))

        return response


def require_rate_limit(limiter: RateLimiter) -> Callable[[Request], RateLimitResult]:
    """Build a FastAPI dependency that throttles a single route.

    The dependency raises ``RateExceededError`` or ``MissingIdentityError``;
    install the handlers from ``throttle.app.main`` to turn them into
    responses.

    Example:
        >>> @app.get("/search", dependencies=[Depends(require_rate_limit(limiter))])
    """

    def dependency(request: Request) -> RateLimitResult:
        return limiter.enforce(get_identity(request, limiter.mode))

    return dependency
