"""Storage for key -> token bucket mappings.

Any object with ``get(key)`` and ``put(key, value)`` can hold buckets for a
limiter. The default is ``TokenTable``, a bounded in-memory LRU.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Iterator, Optional

from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.exceptions import ConfigurationError
from throttle.app.ratelimit.models import TokenBucket

logger = get_logger(__name__)


class TokenStore(ABC):
    """Abstract base class for token bucket storage engines.

    Custom engines only need ``get`` and ``put``; subclassing is optional
    but documents the contract. A limiter serialises its get-miss-put calls
    on custom engines under its own lock.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[TokenBucket]:
        """Return the bucket stored for ``key``, or None."""
        pass

    @abstractmethod
    def put(self, key: str, value: TokenBucket) -> None:
        """Store ``value`` as the bucket for ``key``."""
        pass


class TokenTable(TokenStore):
    """In-memory token bucket table with LRU eviction.

    Memory stays bounded no matter how many distinct keys are seen:
    - Uses OrderedDict for LRU ordering, O(1) per access
    - ``get`` and ``put`` both mark the entry most recently used
    - Inserting past ``size`` evicts the least recently used entries
    """

    DEFAULT_SIZE = 10000

    def __init__(self, size: int = DEFAULT_SIZE):
        if size < 1:
            raise ConfigurationError(f"Token table size must be at least 1, got {size}")
        self.size = size
        self._table: OrderedDict[str, TokenBucket] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[TokenBucket]:
        with self._lock:
            bucket = self._table.get(key)
            if bucket is not None:
                self._table.move_to_end(key)
            return bucket

    def put(self, key: str, value: TokenBucket) -> None:
        with self._lock:
            self._put(key, value)

    def get_or_create(self, key: str, factory: Callable[[], TokenBucket]) -> TokenBucket:
        """Return the bucket for ``key``, creating it with ``factory`` on a miss.

        Lookup and insertion happen under one lock, so concurrent misses for
        the same key share a single bucket. An existing bucket keeps its own
        capacity and fill rate.
        """
        with self._lock:
            bucket = self._table.get(key)
            if bucket is None:
                bucket = factory()
                self._put(key, bucket)
            else:
                self._table.move_to_end(key)
            return bucket

    def _put(self, key: str, value: TokenBucket) -> None:
        self._table[key] = value
        self._table.move_to_end(key)
        while len(self._table) > self.size:
            evicted, _ = self._table.popitem(last=False)
            logger.debug("Evicted token bucket", extra=get_log_context(throttle_key=evicted))

    def keys(self) -> Iterator[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return iter(list(self._table))

    def clear(self) -> None:
        with self._lock:
            self._table.clear()

    def __contains__(self, key: object) -> bool:
        # Membership checks do not count as use
        with self._lock:
            return key in self._table

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)
