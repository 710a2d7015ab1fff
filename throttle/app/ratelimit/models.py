"""Rate limiting data models.

This module contains the token bucket state machine and the small
value objects passed between the resolver, the table and the limiter.
"""

import ipaddress
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class TokenBucket:
    """Token bucket state for one throttling key.

    The bucket starts full. Every ``consume`` first refills from the time
    elapsed since the last refill, then debits if enough tokens are left.
    ``tokens`` always stays within ``[0, capacity]``.
    """
    capacity: float
    fill_rate: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)
    tokens: float = field(init=False)
    last_refill: float = field(init=False)
    # Rejections since the last admitted consume
    rejected: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.tokens = float(self.capacity)
        self.last_refill = self.clock()

    def _refill(self) -> None:
        now = self.clock()
        # A clock stepping backwards adds nothing
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.fill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1) -> bool:
        """Refill, then take ``tokens`` if available.

        Args:
            tokens: Number of tokens to take

        Returns:
            True if the tokens were taken, False if the bucket is short
            (the level is left unchanged in that case)
        """
        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                self.rejected = 0
                return True
            self.rejected += 1
            return False

    def retry_after(self, tokens: float = 1) -> float:
        """Seconds until ``tokens`` will be available at the current level."""
        with self._lock:
            deficit = tokens - self.tokens
            if deficit <= 0:
                return 0.0
            if self.fill_rate <= 0:
                return math.inf
            return deficit / self.fill_rate

    @property
    def remaining(self) -> int:
        """Whole tokens left, without refilling."""
        return int(self.tokens)


@dataclass(frozen=True)
class Override:
    """Burst/rate pair for an exact key or, when ``network`` is set, a CIDR block."""
    burst: float
    rate: float
    network: Optional[Network] = None

    @property
    def is_block(self) -> bool:
        return self.network is not None


@dataclass(frozen=True)
class Policy:
    """Effective limits for one observed key.

    ``key`` is the key buckets are stored under: the first element of a
    comma-delimited forwarded-for chain, or the key itself.
    """
    key: str
    burst: float
    rate: float

    @property
    def unlimited(self) -> bool:
        """A zero burst or rate means the key is not throttled."""
        return not self.burst or not self.rate


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    key: str
    limit: float
    rate: float
    remaining: int = 0
    retry_after: Optional[float] = None
    message: Optional[str] = None
    unlimited: bool = False
