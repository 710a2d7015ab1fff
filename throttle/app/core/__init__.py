"""Core utilities for the throttle filter."""

from throttle.app.core.config import (
    IdentityMode,
    OverrideConfig,
    Settings,
    ThrottleOptions,
    build_options,
    settings,
)
from throttle.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "IdentityMode",
    "OverrideConfig",
    "Settings",
    "ThrottleOptions",
    "build_options",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
