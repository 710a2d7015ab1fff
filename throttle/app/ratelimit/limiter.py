"""Per-identity token bucket rate limiter.

Ties the pieces together for each request key:

    key -> PolicyResolver.resolve -> token table get-or-create
        -> TokenBucket.consume(1) -> RateLimitResult

A resolved burst or rate of 0 means the key is unthrottled; no bucket is
allocated for it. Limiters hold no global state, so several can coexist.
"""

import threading
import time
from typing import Any, Callable, Optional

from throttle.app.core.config import Settings, ThrottleOptions
from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.exceptions import ConfigurationError, MissingIdentityError, RateExceededError
from throttle.app.ratelimit.models import Policy, RateLimitResult, TokenBucket
from throttle.app.ratelimit.policy import PolicyResolver
from throttle.app.ratelimit.table import TokenTable

logger = get_logger(__name__)


def format_rate(rate: float) -> str:
    """Render a rate without a trailing ``.0`` (``1`` rather than ``1.0``)."""
    rate = float(rate)
    if rate.is_integer():
        return str(int(rate))
    return repr(rate)


def _is_token_store(store: Any) -> bool:
    return callable(getattr(store, "get", None)) and callable(getattr(store, "put", None))


class RateLimiter:
    """Admit or reject requests per identity key.

    Example:
        >>> limiter = RateLimiter(build_options(burst=10, rate=0.5, ip=True))
        >>> limiter.check("10.0.0.1").allowed
        True
    """

    def __init__(
        self,
        options: ThrottleOptions,
        token_store: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            options: Validated throttle options
            token_store: Storage engine with ``get(key)``/``put(key, value)``;
                defaults to an LRU ``TokenTable`` of ``options.max_keys``
            clock: Monotonic time source in seconds, used by new buckets

        Raises:
            ConfigurationError: If the token store lacks get/put
        """
        if token_store is None:
            token_store = TokenTable(size=options.max_keys)
        elif not _is_token_store(token_store):
            raise ConfigurationError("token_store must provide get(key) and put(key, value)")

        self.options = options
        self.mode = options.mode
        self.resolver = PolicyResolver.from_options(options)
        self.table = token_store
        self._clock = clock
        # Guards get/put on stores other than TokenTable, which locks itself
        self._table_lock = threading.Lock()

        logger.info(
            "Throttle enabled",
            extra=get_log_context(
                mode=self.mode.value,
                rate=options.rate,
                burst=options.burst,
                overrides=len(options.overrides),
                store=type(token_store).__name__,
            ),
        )

    @classmethod
    def from_settings(cls, app_settings: Settings, **kwargs: Any) -> "RateLimiter":
        return cls(app_settings.to_options(), **kwargs)

    def format_message(self, rate: float) -> str:
        return self.options.message % format_rate(rate)

    def _new_bucket(self, policy: Policy) -> TokenBucket:
        logger.debug(
            "Creating token bucket",
            extra=get_log_context(throttle_key=policy.key, rate=policy.rate, burst=policy.burst),
        )
        return TokenBucket(capacity=policy.burst, fill_rate=policy.rate, clock=self._clock)

    def _get_bucket(self, policy: Policy) -> TokenBucket:
        if isinstance(self.table, TokenTable):
            return self.table.get_or_create(policy.key, lambda: self._new_bucket(policy))

        with self._table_lock:
            bucket = self.table.get(policy.key)
            if bucket is None:
                bucket = self._new_bucket(policy)
                self.table.put(policy.key, bucket)
            return bucket

    def check(self, key: Optional[str]) -> RateLimitResult:
        """Consume one token for ``key`` and report the decision.

        Args:
            key: Identity string extracted from the request

        Returns:
            RateLimitResult; ``allowed`` is False when the bucket is empty

        Raises:
            MissingIdentityError: If ``key`` is missing or empty
        """
        if not key or not key.strip():
            raise MissingIdentityError(mode=self.mode.value)

        policy = self.resolver.resolve(key)
        if not policy.key:
            raise MissingIdentityError(mode=self.mode.value)

        if policy.unlimited:
            return RateLimitResult(
                allowed=True,
                key=policy.key,
                limit=policy.burst,
                rate=policy.rate,
                unlimited=True,
            )

        bucket = self._get_bucket(policy)
        if bucket.consume(1):
            return RateLimitResult(
                allowed=True,
                key=policy.key,
                limit=bucket.capacity,
                rate=bucket.fill_rate,
                remaining=bucket.remaining,
            )

        message = self.format_message(policy.rate)
        retry_after = bucket.retry_after(1)
        # Warn once when a key runs dry; repeats while it stays dry are debug
        log = logger.warning if bucket.rejected == 1 else logger.debug
        log(
            "Rate limit exceeded",
            extra=get_log_context(
                throttle_key=policy.key,
                mode=self.mode.value,
                rate=policy.rate,
                burst=policy.burst,
                rejected=bucket.rejected,
            ),
        )
        return RateLimitResult(
            allowed=False,
            key=policy.key,
            limit=bucket.capacity,
            rate=bucket.fill_rate,
            remaining=0,
            retry_after=retry_after,
            message=message,
        )

    def enforce(self, key: Optional[str]) -> RateLimitResult:
        """Like ``check``, but raise on rejection.

        Raises:
            MissingIdentityError: If ``key`` is missing or empty
            RateExceededError: If the key is out of tokens
        """
        result = self.check(key)
        if not result.allowed:
            raise RateExceededError(
                result.message or self.format_message(result.rate),
                rate=result.rate,
                retry_after=result.retry_after,
                result=result,
            )
        return result
