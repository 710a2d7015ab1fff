"""Shared fixtures for the throttle test suite."""

import pytest

from throttle.app.core.config import build_options
from throttle.app.ratelimit.limiter import RateLimiter


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_limiter(clock):
    """Build a limiter on the fake clock from throttle option keywords."""

    def _make(token_store=None, **options):
        return RateLimiter(build_options(**options), token_store=token_store, clock=clock)

    return _make
