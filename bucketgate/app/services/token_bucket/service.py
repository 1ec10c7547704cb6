"""Rate limiter facade.

Wraps one atomic store round trip per ``allow()`` call and applies the
configured failure policy when the store is unavailable. Request handling
code only ever sees a ``Decision``.
"""

import asyncio
import math
import time
from typing import Any, Callable, Optional

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import EncodingError, StoreUnavailable

from .models import BucketState, Decision, DecisionReason, FailurePolicy, RateLimitConfig
from .store import BucketStore, create_store

logger = get_logger(__name__)

# Retry hint handed out while the store is down and the policy denies
STORE_UNAVAILABLE_RETRY_AFTER = 1.0


class RateLimiter:
    """Distributed token bucket rate limiter.

    Provides:
    - One atomic read-refill-consume-write per decision, executed by the store
    - Per-call policy override for different key classes (routes, tenant tiers)
    - Fail-open / fail-closed handling of store outages and timeouts
    - Read-only inspection and reset of individual buckets

    Store key format:
    - {key_prefix}:{key} - Redis hash holding v, tokens, ts
    """

    def __init__(
        self,
        store: BucketStore,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
        use_store_clock: Optional[bool] = None,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Bucket state store executing the atomic operation
            config: Default policy (None = built from settings)
            clock: Returns the current time in seconds since epoch
            timeout: Seconds allowed for the store round trip
                (None = settings.rate_limit_store_timeout_ms)
            use_store_clock: Let the store supply "now" so every server
                shares one clock (None = settings.rate_limit_use_store_clock)

        Raises:
            ConfigurationError: If the settings describe an invalid policy
        """
        self._store = store
        self._config = config or RateLimitConfig.from_settings(settings)
        self._clock = clock
        self._timeout = (
            timeout if timeout is not None else settings.rate_limit_store_timeout_ms / 1000
        )
        self._use_store_clock = (
            use_store_clock if use_store_clock is not None else settings.rate_limit_use_store_clock
        )

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def store(self) -> BucketStore:
        return self._store

    async def allow(
        self,
        key: str,
        cost: Optional[float] = None,
        config: Optional[RateLimitConfig] = None,
    ) -> Decision:
        """Decide whether a request for ``key`` may proceed now.

        Args:
            key: Identity key (API key hash, client IP hash, tenant id, ...)
            cost: Tokens to consume (None = config.default_cost)
            config: Policy for this key class (None = the limiter default)

        Returns:
            Decision; store failures are folded in through the failure policy

        Raises:
            ValueError: If cost is negative or not finite
        """
        config = config or self._config
        if cost is None:
            cost = config.default_cost
        if not math.isfinite(cost) or cost < 0:
            raise ValueError(f"cost must be a finite number >= 0, got {cost}")

        store_key = config.make_key(key)
        now = None if self._use_store_clock else self._clock()

        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(
                self._store.apply(store_key, config, now, cost),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            return self._handle_store_failure(key, config, StoreUnavailable("timeout", e))
        except StoreUnavailable as e:
            return self._handle_store_failure(key, config, e)
        except Exception as e:
            # Anything else from the store is treated as an outage, never a crash
            logger.exception(f"Unexpected bucket store error: {e}")
            return self._handle_store_failure(key, config, StoreUnavailable("unexpected", e))
        duration_ms = (time.perf_counter() - started) * 1000

        decision = outcome.decision
        if outcome.recovered:
            logger.warning(
                "Malformed bucket state replaced with a full bucket",
                extra=get_log_context(rate_limit_key=key, store=self._store.name),
            )
        if decision.reason is DecisionReason.COST_EXCEEDS_CAPACITY:
            logger.warning(
                f"Requested cost {cost} exceeds bucket capacity {config.capacity}; "
                "request can never be allowed",
                extra=get_log_context(rate_limit_key=key, reason=decision.reason.value),
            )
        logger.debug(
            f"Rate limit decision allowed={decision.allowed} remaining={decision.remaining:.3f}",
            extra=get_log_context(
                rate_limit_key=key,
                reason=decision.reason.value,
                store=self._store.name,
                duration_ms=round(duration_ms, 3),
            ),
        )
        return decision

    def _handle_store_failure(
        self, key: str, config: RateLimitConfig, error: StoreUnavailable
    ) -> Decision:
        """Handle store failure with configurable fail-open/fail-closed policy."""
        if config.failure_policy is FailurePolicy.CLOSED:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error.reason}. Request denied.",
                extra=get_log_context(
                    rate_limit_key=key,
                    policy=config.failure_policy.value,
                    reason=DecisionReason.STORE_UNAVAILABLE.value,
                    store=self._store.name,
                ),
            )
            return Decision(
                allowed=False,
                remaining=0.0,
                retry_after=STORE_UNAVAILABLE_RETRY_AFTER,
                limit=config.capacity,
                reason=DecisionReason.STORE_UNAVAILABLE,
                error=error,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error.reason}. "
            "Request allowed without rate limit check.",
            extra=get_log_context(
                rate_limit_key=key,
                policy=config.failure_policy.value,
                reason=DecisionReason.UNENFORCED.value,
                store=self._store.name,
            ),
        )
        # Bucket state is unknown, so report nothing left
        return Decision(
            allowed=True,
            remaining=0.0,
            retry_after=0.0,
            limit=config.capacity,
            reason=DecisionReason.UNENFORCED,
        )

    async def peek(
        self, key: str, config: Optional[RateLimitConfig] = None
    ) -> Optional[BucketState]:
        """Read the stored bucket for diagnostics without consuming tokens.

        Returns None when the bucket does not exist, is unreadable, or the
        store is unavailable. The stored value is not refilled to "now".
        """
        config = config or self._config
        store_key = config.make_key(key)
        try:
            return await asyncio.wait_for(self._store.get_state(store_key), timeout=self._timeout)
        except EncodingError as e:
            logger.warning(f"Cannot read bucket state: {e}", extra=get_log_context(rate_limit_key=key))
        except (StoreUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Bucket store unavailable during peek: {e}", extra=get_log_context(rate_limit_key=key))
        return None

    async def reset(self, key: str, config: Optional[RateLimitConfig] = None) -> bool:
        """Delete a bucket so the next request starts from a full bucket.

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        config = config or self._config
        removed = await self._store.delete(config.make_key(key))
        logger.info(f"Reset rate limit bucket (existed={removed})", extra=get_log_context(rate_limit_key=key))
        return removed

    async def close(self) -> None:
        """Close the limiter and its store."""
        await self._store.close()


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter(
    redis_client: Optional[Any] = None,
    redis_url: Optional[str] = None,
    use_redis: Optional[bool] = None,
) -> RateLimiter:
    """Get the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        store = create_store(
            redis_client=redis_client,
            redis_url=redis_url,
            use_redis=use_redis,
        )
        _rate_limiter = RateLimiter(store=store)
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter instance."""
    global _rate_limiter
    _rate_limiter = None
