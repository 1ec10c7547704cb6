"""Services package for the rate limiter.

This package provides:
- Token bucket engine and codec
- Atomic bucket stores (Redis Lua script, Redis WATCH/MULTI, in-memory)
- The RateLimiter facade and decision reporting
"""

from bucketgate.app.services.token_bucket import (
    Decision,
    DecisionReporter,
    RateLimitConfig,
    RateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    "Decision",
    "DecisionReporter",
    "RateLimitConfig",
    "RateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
]
