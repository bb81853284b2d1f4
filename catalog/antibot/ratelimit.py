"""Blocking per-platform request pacing."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from ..errors import NetworkError

LOGGER = logging.getLogger(__name__)


class TokenBucket:
    """Fixed-interval token bucket.

    The bucket is refilled to ``capacity`` every ``refill_interval`` seconds.
    ``acquire`` blocks on a condition variable until a token is available.
    """

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self.capacity = capacity
        self.refill_interval = refill_interval
        self._clock = clock
        self._tokens = capacity
        self._last_refill = clock()
        self._cond = threading.Condition()

    @property
    def tokens(self) -> int:
        with self._cond:
            self._refill_locked()
            return self._tokens

    def _refill_locked(self) -> None:
        elapsed = self._clock() - self._last_refill
        if elapsed >= self.refill_interval:
            periods = int(elapsed // self.refill_interval)
            self._last_refill += periods * self.refill_interval
            self._tokens = self.capacity
            self._cond.notify_all()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one token, waiting up to ``timeout`` seconds.

        Returns
        -------
        bool
            False if the timeout expired before a token became available
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._refill_locked()
                if self._tokens > 0:
                    self._tokens -= 1
                    return True
                wait_for = self._last_refill + self.refill_interval - self._clock()
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return False
                    wait_for = min(wait_for, remaining)
                self._cond.wait(max(wait_for, 0.001))


class PlatformRateLimiter:
    """Token bucket plus concurrent-request cap for each platform."""

    def __init__(
        self,
        buckets: Dict[str, TokenBucket],
        max_concurrent: Dict[str, int],
        *,
        acquire_timeout: Optional[float] = None,
    ) -> None:
        self._buckets = buckets
        self._slots = {
            key: threading.BoundedSemaphore(max(1, value))
            for key, value in max_concurrent.items()
        }
        self.acquire_timeout = acquire_timeout

    @contextmanager
    def slot(self, key: str) -> Iterator[None]:
        """Hold a token and a concurrency slot for one request to ``key``."""
        started = time.monotonic()
        bucket = self._buckets.get(key)
        if bucket is not None and not bucket.acquire(self.acquire_timeout):
            raise NetworkError(f"Rate limit wait exceeded for {key}")

        semaphore = self._slots.get(key)
        if semaphore is not None:
            if not semaphore.acquire(timeout=self.acquire_timeout):
                raise NetworkError(f"Concurrency slot wait exceeded for {key}")
        waited = time.monotonic() - started
        if waited > 1.0:
            LOGGER.debug("Waited %.1fs for %s rate limit", waited, key)
        try:
            yield
        finally:
            if semaphore is not None:
                semaphore.release()
