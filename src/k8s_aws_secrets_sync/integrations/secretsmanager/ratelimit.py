"""Thread-safe token bucket shared by concurrent secret fetch workers."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

logger = structlog.get_logger()


class TokenBucketRateLimiter:
    """Token bucket with a temporary slow-down on throttling.

    ``acquire`` blocks until a token is available. ``throttle`` multiplies the
    current refill rate by ``throttle_factor`` (never below ``min_rate``) and
    stays in effect until ``reset`` is called, which the reconciler does at
    the start of every tick.

    Example:
        >>> limiter = TokenBucketRateLimiter(rate=10, burst=10)
        >>> limiter.acquire()
        0.0
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        min_rate: float = 1.0,
        throttle_factor: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0 or min_rate <= 0:
            raise ValueError("rate and min_rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self._base_rate = rate
        self._rate = rate
        self._min_rate = min(min_rate, rate)
        self._burst = burst
        self._throttle_factor = throttle_factor
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last_refill = clock()
        self.throttle_count = 0

    @property
    def current_rate(self) -> float:
        """Refill rate currently in effect (requests per second)."""
        with self._lock:
            return self._rate

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)
        self._last_refill = now

    def acquire(self) -> float:
        """Take one token, sleeping until one is available.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait = (1.0 - self._tokens) / self._rate
            self._sleep(wait)
            waited += wait

    def throttle(self) -> None:
        """Reduce the request rate after a throttling signal."""
        with self._lock:
            previous = self._rate
            self._rate = max(self._min_rate, self._rate * self._throttle_factor)
            self.throttle_count += 1
            current, count = self._rate, self.throttle_count
            # Drain so the slower rate applies immediately
            self._tokens = min(self._tokens, 1.0)
        logger.warning(
            "secret_store_rate_reduced",
            previous_rate=previous,
            current_rate=current,
            throttle_count=count,
        )

    def reset(self) -> None:
        """Restore the nominal rate; called at each tick boundary."""
        with self._lock:
            if self._rate != self._base_rate:
                logger.debug("secret_store_rate_restored", rate=self._base_rate)
            self._rate = self._base_rate
            self.throttle_count = 0

    def __repr__(self) -> str:
        return f"TokenBucketRateLimiter(rate={self._rate}, burst={self._burst})"
