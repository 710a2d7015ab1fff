"""Configuration for the throttle filter.

Two layers live here:

- ``ThrottleOptions``: the construction-time options of one filter instance
  (burst, rate, identity mode, overrides, table size, message template).
  Validated once with pydantic; failures surface as ``ConfigurationError``.
- ``Settings``: environment driven settings (``THROTTLE_*`` variables or a
  ``.env`` file) used by the bundled application and the logging setup.
"""

from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from throttle.app.exceptions import ConfigurationError

DEFAULT_MAX_KEYS = 10000
DEFAULT_MESSAGE = "You have exceeded your request rate of %s r/s."
LOG_FORMATS = ("text", "structured", "json")


class IdentityMode(str, Enum):
    """Which request attribute identifies the caller."""

    IP = "ip"
    XFF = "xff"
    USERNAME = "username"


class OverrideConfig(BaseModel):
    """Burst/rate pair replacing the defaults for one key or CIDR block.

    Both fields are required: an override that only sets one of them is
    rejected instead of silently falling back to the defaults.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    burst: float = Field(ge=0)
    rate: float = Field(ge=0)


def _validate_message(value: str) -> str:
    if "%s" not in value:
        raise ValueError("message must contain a %s placeholder for the rate")
    try:
        value % ("1",)
    except (TypeError, ValueError) as e:
        raise ValueError(f"message must contain exactly one %s placeholder: {e}") from e
    return value


class ThrottleOptions(BaseModel):
    """Options for one throttle filter.

    Exactly one of ``ip``, ``xff`` and ``username`` must be true; the choice
    is exposed as ``mode``. A ``burst``/``rate`` of 0 means unthrottled.

    Example:
        >>> ThrottleOptions(
        ...     burst=10,
        ...     rate=0.5,
        ...     ip=True,
        ...     overrides={"192.168.1.1": {"burst": 0, "rate": 0}},
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    burst: float = Field(ge=0)
    rate: float = Field(ge=0)
    ip: bool = False
    xff: bool = False
    username: bool = False
    overrides: dict[str, OverrideConfig] = Field(default_factory=dict)
    max_keys: int = Field(default=DEFAULT_MAX_KEYS, ge=1)
    message: str = DEFAULT_MESSAGE

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        """Validate the message template takes a single rate argument."""
        return _validate_message(v)

    @model_validator(mode="after")
    def validate_single_mode(self) -> "ThrottleOptions":
        """Validate exactly one identity mode is selected."""
        if sum((self.ip, self.xff, self.username)) != 1:
            raise ValueError("exactly one of ip, xff, username must be true")
        return self

    @property
    def mode(self) -> IdentityMode:
        if self.ip:
            return IdentityMode.IP
        if self.xff:
            return IdentityMode.XFF
        return IdentityMode.USERNAME


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(loc) for loc in error["loc"]) or "options"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def build_options(**kwargs: Any) -> ThrottleOptions:
    """Build and validate throttle options.

    Args:
        **kwargs: ThrottleOptions fields

    Returns:
        Validated ThrottleOptions

    Raises:
        ConfigurationError: If any option is missing or invalid
    """
    try:
        return ThrottleOptions(**kwargs)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid throttle options: {_format_validation_error(e)}",
            errors=e.errors(include_url=False),
        ) from e


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via ``THROTTLE_``-prefixed environment
    variables or a .env file. ``THROTTLE_OVERRIDES`` takes a JSON object.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Rate limiting settings
    burst: float = 10
    rate: float = 5
    mode: IdentityMode = IdentityMode.IP
    overrides: dict[str, OverrideConfig] = Field(default_factory=dict)
    max_keys: int = DEFAULT_MAX_KEYS
    message: str = DEFAULT_MESSAGE

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one we can configure."""
        v = v.lower()
        if v not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        return v

    def to_options(self) -> ThrottleOptions:
        """Build filter options from these settings."""
        return build_options(
            burst=self.burst,
            rate=self.rate,
            overrides={key: value.model_dump() for key, value in self.overrides.items()},
            max_keys=self.max_keys,
            message=self.message,
            **{self.mode.value: True},
        )

    model_config = SettingsConfigDict(env_prefix="THROTTLE_", env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
