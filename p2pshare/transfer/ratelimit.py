"""
Token bucket rate limiter for the chunk server.

Admission is instantaneous: a request either takes a token or is rejected
on the spot. There is no queuing and no waiting for a refill.
"""

import threading
import time
from typing import Callable, Optional

from ..errors import ConfigurationError

DEFAULT_RATE = 1000.0  # requests per second


class TokenBucket:
    """
    Thread-safe token bucket.

    The bucket starts full. Tokens refill continuously at `rate` per second
    up to `capacity` (defaults to one second's worth).
    """

    def __init__(self, rate: float = DEFAULT_RATE, capacity: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ConfigurationError("rate must be positive")
        if capacity is None:
            capacity = rate
        if capacity <= 0:
            raise ConfigurationError("capacity must be positive")

        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = threading.Lock()

        # Statistics
        self.allowed = 0
        self.denied = 0

    def _refill(self, now: float):
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last_refill = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take `tokens` if available. Never blocks."""
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= tokens:
                self._tokens -= tokens
                self.allowed += 1
                return True
            self.denied += 1
            return False

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def get_stats(self) -> dict:
        return {
            'rate': self.rate,
            'capacity': self.capacity,
            'allowed': self.allowed,
            'denied': self.denied,
        }
