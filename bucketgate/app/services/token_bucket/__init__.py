"""Distributed token bucket rate limiting.

This package provides a pure token bucket engine, a Redis hash codec,
atomic bucket stores (Lua script, WATCH/MULTI transaction, in-memory)
and the RateLimiter facade used by request handling code.
"""

from .codec import decode_state, encode_state
from .engine import compute, initial_state
from .models import (
    BucketState,
    Decision,
    DecisionReason,
    FailurePolicy,
    RateLimitConfig,
    StoreOutcome,
)
from .redis_lua import TOKEN_BUCKET_SCRIPT, TOKEN_BUCKET_SCRIPT_SHA
from .reporter import DecisionReporter, RateLimitSignals
from .service import RateLimiter, get_rate_limiter, reset_rate_limiter
from .store import (
    BucketStore,
    InMemoryBucketStore,
    RedisCASBucketStore,
    RedisScriptBucketStore,
    create_store,
)

__all__ = [
    # Models
    "BucketState",
    "Decision",
    "DecisionReason",
    "FailurePolicy",
    "RateLimitConfig",
    "StoreOutcome",
    # Engine and codec
    "compute",
    "initial_state",
    "encode_state",
    "decode_state",
    "TOKEN_BUCKET_SCRIPT",
    "TOKEN_BUCKET_SCRIPT_SHA",
    # Stores
    "BucketStore",
    "InMemoryBucketStore",
    "RedisScriptBucketStore",
    "RedisCASBucketStore",
    "create_store",
    # Facade and reporting
    "RateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
    "DecisionReporter",
    "RateLimitSignals",
]
