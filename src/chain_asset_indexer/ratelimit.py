"""Token bucket rate limiting.

`TokenBucket` throttles outbound RPC traffic (awaiting refills) and backs
the per-client request limiter (rejecting immediately when empty).
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_MINUTE = 100
DEFAULT_BURST = 100
DEFAULT_MAX_CLIENTS = 10_000

Clock = Callable[[], float]


class RateLimitExceededError(Exception):
    """Raised when a client identity has exhausted its request budget."""

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Too many requests from {client_id}, retry later")
        self.client_id = client_id


@dataclass
class TokenBucket:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float
    clock: Clock = field(default=time.monotonic, repr=False)

    @classmethod
    def create(
        cls,
        refill_per_second: float,
        *,
        capacity: float | None = None,
        clock: Clock = time.monotonic,
    ) -> TokenBucket:
        """Create a full bucket refilling at ``refill_per_second``."""
        max_tokens = capacity if capacity is not None else refill_per_second
        return cls(
            max_tokens=max_tokens,
            refill_rate=refill_per_second,
            tokens=max_tokens,
            last_refill=clock(),
            clock=clock,
        )

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if available, without waiting."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while not self.try_acquire(tokens):
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ClientRateLimiter:
    """Per-client-identity request throttle.

    Buckets are created lazily on first sight of a client identity. The map
    is bounded: once ``max_clients`` identities are tracked, the least
    recently seen one is evicted (it starts with a full bucket if it
    returns).
    """

    def __init__(
        self,
        *,
        requests_per_minute: float = DEFAULT_REQUESTS_PER_MINUTE,
        burst: int = DEFAULT_BURST,
        max_clients: int = DEFAULT_MAX_CLIENTS,
        clock: Clock = time.monotonic,
    ) -> None:
        if max_clients < 1:
            raise ValueError("max_clients must be >= 1")
        self._refill_per_second = requests_per_minute / 60.0
        self._burst = burst
        self._max_clients = max_clients
        self._clock = clock
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _bucket_for(self, client_id: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(client_id)
            if bucket is None:
                bucket = TokenBucket.create(
                    self._refill_per_second,
                    capacity=self._burst,
                    clock=self._clock,
                )
                self._buckets[client_id] = bucket
                if len(self._buckets) > self._max_clients:
                    evicted, _ = self._buckets.popitem(last=False)
                    logger.debug("Evicted rate limiter for %s", evicted)
            else:
                self._buckets.move_to_end(client_id)
            return bucket

    def allow(self, client_id: str) -> bool:
        """Consume one request for ``client_id``; False when over the limit."""
        bucket = self._bucket_for(client_id)
        with self._lock:
            return bucket.try_acquire()

    def check(self, client_id: str) -> None:
        """Consume one request or raise `RateLimitExceededError`."""
        if not self.allow(client_id):
            logger.warning("Client %s is sending requests too frequently", client_id)
            raise RateLimitExceededError(client_id)
