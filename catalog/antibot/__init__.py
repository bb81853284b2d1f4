"""Anti-bot toolkit used by the fetch orchestrator.

- Per-platform circuit breakers and strategy escalation
- Blocking token-bucket rate limiting
- User-agent rotation
- Blocked-response classification
"""

from .detection import classify_block
from .ratelimit import PlatformRateLimiter, TokenBucket
from .retry import CircuitBreaker, CircuitBreakerConfig, CircuitState, EscalationMatrix
from .user_agent import UserAgentPool

__all__ = [
    "classify_block",
    "PlatformRateLimiter",
    "TokenBucket",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "EscalationMatrix",
    "UserAgentPool",
]
