"""Application factory for a throttled FastAPI service.

Run with ``uvicorn --factory throttle.app.main:create_app``; limits come
from ``THROTTLE_*`` environment variables (see ``Settings``).
"""

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from throttle import __version__
from throttle.app.core.config import Settings, settings
from throttle.app.core.logging import get_logger, setup_logging
from throttle.app.exceptions import MissingIdentityError, RateExceededError
from throttle.app.middleware.rate_limit import (
    ThrottleMiddleware,
    rate_limit_headers,
    retry_after_seconds,
)
from throttle.app.ratelimit.limiter import RateLimiter


def create_app(app_settings: Optional[Settings] = None, limiter: Optional[RateLimiter] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings to build the limiter and logging from
            (global settings by default)
        limiter: Prebuilt limiter, overriding the one built from settings

    Returns:
        Configured FastAPI application instance

    Raises:
        ConfigurationError: If the throttle settings are invalid
    """
    app_settings = app_settings or settings

    setup_logging(app_settings)
    logger = get_logger(__name__)

    if limiter is None:
        limiter = RateLimiter.from_settings(app_settings)

    app = FastAPI(
        title="Throttle",
        description="Per-identity token bucket request throttling",
        version=__version__,
    )
    app.state.limiter = limiter
    app.add_middleware(ThrottleMiddleware, limiter=limiter)

    @app.get("/")
    async def index() -> dict[str, str]:
        return {"message": "hello"}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with the active throttle mode and tracked key count."""
        status: dict[str, Any] = {
            "status": "ok",
            "mode": limiter.mode.value,
        }
        if hasattr(limiter.table, "__len__"):
            status["tracked_keys"] = len(limiter.table)
        return status

    @app.exception_handler(RateExceededError)
    async def rate_exceeded_handler(request: Request, exc: RateExceededError) -> JSONResponse:
        """Handle RateExceededError raised by route dependencies and return HTTP 429."""
        headers = rate_limit_headers(exc.result) if exc.result is not None else {}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "rate_limit_exceeded",
                "message": exc.message,
                "retry_after": retry_after_seconds(exc.retry_after),
            },
            headers=headers,
        )

    @app.exception_handler(MissingIdentityError)
    async def missing_identity_handler(request: Request, exc: MissingIdentityError) -> JSONResponse:
        logger.error(
            f"Cannot determine throttling identity for {request.method} {request.url.path}",
            extra={"mode": exc.mode},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "throttle_configuration", "message": exc.detail},
        )

    logger.info(
        "Application startup complete",
        extra={"mode": limiter.mode.value, "debug_mode": app_settings.debug},
    )
    return app
