"""Per-platform circuit breaker and fetch-strategy escalation."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, TypeVar

from ..errors import BlockedError, BreakerOpenError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

BreakerListener = Callable[[str, int, float], None]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocked too often, fail fast
    HALF_OPEN = "half_open"  # One trial request in flight


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive blocked responses before opening
    cooldown: float = 300.0  # Seconds before a half-open trial request is allowed
    cooldown_multiplier: float = 2.0  # Applied when the trial request fails
    max_cooldown: float = 3600.0


class CircuitBreaker:
    """Thread-safe circuit breaker guarding one platform.

    Only blocked responses count as failures. While open, callers fail fast
    without network I/O; after the cool-down exactly one trial request is let through.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_open: Optional[BreakerListener] = None,
    ) -> None:
        """Initialize circuit breaker.

        Parameters
        ----------
        name : str
            Platform name, used in logs and listener calls
        config : CircuitBreakerConfig, optional
            Configuration (uses defaults if not provided)
        clock : callable
            Monotonic time source, injectable for tests
        on_open : callable, optional
            Called as ``on_open(name, failures, cooldown)`` whenever the breaker opens
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_open = on_open
        self._lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.current_cooldown = self.config.cooldown
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    def allow_request(self) -> bool:
        """Return True if a request may be issued now.

        Moving from OPEN to HALF_OPEN hands the caller the single trial slot.
        """
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if self._clock() - (self.opened_at or 0.0) < self.current_cooldown:
                    return False
                LOGGER.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)
                self.state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                return True
            # HALF_OPEN
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def retry_after(self) -> float:
        """Seconds until the next trial request is allowed (0 when closed)."""
        with self._lock:
            if self.state != CircuitState.OPEN or self.opened_at is None:
                return 0.0
            return max(0.0, self.current_cooldown - (self._clock() - self.opened_at))

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                LOGGER.info("Circuit breaker %s transitioning to CLOSED (recovered)", self.name)
                self.current_cooldown = self.config.cooldown
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        """Record a blocked response."""
        opened = False
        with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN:
                self.current_cooldown = min(
                    self.current_cooldown * self.config.cooldown_multiplier,
                    self.config.max_cooldown,
                )
                self._open_locked()
                opened = True
            elif self.state == CircuitState.CLOSED:
                if self.failure_count >= self.config.failure_threshold:
                    self._open_locked()
                    opened = True
            failures, cooldown = self.failure_count, self.current_cooldown

        if opened:
            LOGGER.warning(
                "Circuit breaker OPEN for platform=%s after %d blocked responses (cooldown %.0fs)",
                self.name,
                failures,
                cooldown,
            )
            if self._on_open is not None:
                self._on_open(self.name, failures, cooldown)

    def release_trial(self) -> None:
        """Free the trial slot when the trial request ended without a verdict (e.g. timeout)."""
        with self._lock:
            self._trial_in_flight = False

    def _open_locked(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self._trial_in_flight = False

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Execute function with circuit breaker protection.

        Raises
        ------
        BreakerOpenError
            If the breaker is open (``func`` is not called)
        BlockedError
            Re-raised after being counted as a failure
        """
        if not self.allow_request():
            raise BreakerOpenError(self.name, self.retry_after())
        try:
            result = func(*args, **kwargs)
        except BlockedError:
            self.record_failure()
            raise
        except Exception:
            self.release_trial()
            raise
        self.record_success()
        return result


class EscalationMatrix:
    """Per-platform fetch strategy ladder (plain HTTP → rendered browser)."""

    LEVELS: List[str] = ["http", "rendered"]

    def __init__(self, levels: Optional[List[str]] = None) -> None:
        self.levels = list(levels or self.LEVELS)
        self._current: Dict[str, int] = {}
        self._lock = threading.Lock()

    def escalate(self, key: str) -> Optional[str]:
        """Escalate ``key`` to the next level.

        Returns
        -------
        str or None
            Next level name, or None if already at the top
        """
        with self._lock:
            level = self._current.get(key, 0) + 1
            if level >= len(self.levels):
                return None
            self._current[key] = level
        LOGGER.info("Escalating %s to level %d: %s", key, level, self.levels[level])
        return self.levels[level]

    def get_current_level(self, key: str) -> str:
        with self._lock:
            return self.levels[self._current.get(key, 0)]
