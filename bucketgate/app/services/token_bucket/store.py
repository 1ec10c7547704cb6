"""Bucket state stores.

Every store implements ``apply`` as one indivisible read-compute-write unit.
Redis stores translate client errors into ``StoreUnavailable`` so the facade
can apply its failure policy.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import NoScriptError

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import EncodingError, StoreUnavailable

from .codec import decode_state, encode_state
from .engine import compute
from .models import BucketState, Decision, DecisionReason, RateLimitConfig, StoreOutcome
from .redis_lua import TOKEN_BUCKET_SCRIPT, TOKEN_BUCKET_SCRIPT_SHA

logger = get_logger(__name__)


def _decode_or_recover(raw: Any, key: str) -> Tuple[Optional[BucketState], bool]:
    """Decode stored state; malformed state counts as a missing key."""
    try:
        return decode_state(raw, key), False
    except EncodingError as e:
        logger.debug(f"Discarding malformed bucket state: {e}")
        return None, True


class BucketStore(ABC):
    """Abstract base class for bucket state stores."""

    name: str = "abstract"

    @abstractmethod
    async def apply(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[float],
        cost: float,
    ) -> StoreOutcome:
        """Atomically refill, consume and persist the bucket for ``key``.

        Args:
            key: Full store key (prefix included)
            config: Bucket policy
            now: Current time in seconds, or None to use the store's clock
            cost: Tokens requested

        Returns:
            StoreOutcome with the engine decision

        Raises:
            StoreUnavailable: If the store could not complete the operation
        """
        pass

    @abstractmethod
    async def get_state(self, key: str) -> Optional[BucketState]:
        """Read the stored state without modifying it.

        Raises:
            EncodingError: If the stored state is malformed
            StoreUnavailable: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a bucket. Returns True if it existed."""
        pass

    async def close(self) -> None:
        """Release store resources."""
        pass


class InMemoryBucketStore(BucketStore):
    """In-process bucket store.

    Suitable for single-instance deployments and tests. Atomicity comes from
    an asyncio lock, so it only holds within one event loop.

    Memory is bounded two ways: entries expire after the policy's TTL, and
    once max_entries is exceeded the least recently used 20% are evicted.
    """

    name = "memory"
    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._data: "OrderedDict[str, Tuple[Dict[str, str], Optional[float]]]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    def _get_live(self, key: str) -> Optional[Dict[str, str]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return raw

    def _enforce_lru_limit(self) -> None:
        if len(self._data) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(remove_count):
                self._data.popitem(last=False)

    async def apply(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[float],
        cost: float,
    ) -> StoreOutcome:
        async with self._lock:
            if now is None:
                now = self._clock()
            state, recovered = _decode_or_recover(self._get_live(key), key)
            new_state, decision = compute(state, config, now, cost)

            ttl = config.effective_ttl_seconds
            expires_at = self._clock() + ttl if ttl is not None else None
            self._data[key] = (encode_state(new_state), expires_at)
            self._data.move_to_end(key)
            self._enforce_lru_limit()
            return StoreOutcome(decision=decision, recovered=recovered)

    async def get_state(self, key: str) -> Optional[BucketState]:
        async with self._lock:
            return decode_state(self._get_live(key), key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._data)


class _RedisBucketStore(BucketStore):
    """Shared connection handling for Redis-backed stores."""

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis
            timeout = settings.rate_limit_store_timeout_ms / 1000
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        return self._redis

    @staticmethod
    def _unavailable(e: redis.RedisError) -> StoreUnavailable:
        # TimeoutError and ConnectionError both derive from RedisError
        if isinstance(e, redis.TimeoutError):
            return StoreUnavailable("timeout", e)
        if isinstance(e, redis.ConnectionError):
            return StoreUnavailable("connection_error", e)
        return StoreUnavailable("redis_error", e)

    async def get_state(self, key: str) -> Optional[BucketState]:
        try:
            raw = await self._get_redis().hgetall(key)
        except redis.RedisError as e:
            raise self._unavailable(e) from e
        return decode_state(raw, key)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._get_redis().delete(key))
        except redis.RedisError as e:
            raise self._unavailable(e) from e

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


class RedisScriptBucketStore(_RedisBucketStore):
    """Distributed store running the token bucket as a server-side Lua script.

    One EVALSHA round trip per decision; the script is loaded with EVAL the
    first time a Redis node reports NOSCRIPT.
    """

    name = "redis_script"

    async def _run_script(self, key: str, *args: Any) -> Any:
        redis_client = self._get_redis()
        try:
            return await redis_client.evalsha(TOKEN_BUCKET_SCRIPT_SHA, 1, key, *args)
        except NoScriptError:
            return await redis_client.eval(TOKEN_BUCKET_SCRIPT, 1, key, *args)

    async def apply(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[float],
        cost: float,
    ) -> StoreOutcome:
        ttl = config.effective_ttl_seconds
        try:
            result = await self._run_script(
                key,
                repr(float(config.refill_rate)),  # ARGV[1]
                repr(float(config.capacity)),  # ARGV[2]
                repr(float(now)) if now is not None else "-1",  # ARGV[3]
                repr(float(cost)),  # ARGV[4]
                ttl if ttl is not None else 0,  # ARGV[5]
            )
        except redis.RedisError as e:
            logger.error(
                f"Token bucket script failed: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            raise self._unavailable(e) from e

        allowed = bool(int(result[0]))
        remaining = float(_as_text(result[1]))
        retry_after = float(_as_text(result[2]))
        recovered = bool(int(result[3]))

        if allowed:
            reason = DecisionReason.ALLOWED
        elif cost > config.capacity:
            reason = DecisionReason.COST_EXCEEDS_CAPACITY
        else:
            reason = DecisionReason.RATE_LIMITED

        decision = Decision(
            allowed=allowed,
            remaining=remaining,
            retry_after=retry_after,
            limit=config.capacity,
            reason=reason,
        )
        return StoreOutcome(decision=decision, recovered=recovered)


class RedisCASBucketStore(_RedisBucketStore):
    """Distributed store using optimistic WATCH/MULTI/EXEC transactions.

    The engine runs in this process; the transaction aborts if another
    caller touched the key in between, and the whole unit is retried up
    to max_attempts times before the store is reported unavailable.
    """

    name = "redis_cas"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(redis_client=redis_client, redis_url=redis_url)
        self._max_attempts = max_attempts or settings.rate_limit_cas_max_attempts

    async def _read(self, pipe: Any, key: str) -> Tuple[Optional[BucketState], bool]:
        try:
            raw = await pipe.hgetall(key)
        except redis.ResponseError as e:
            if "WRONGTYPE" not in str(e):
                raise
            logger.debug(f"Bucket key {key} holds another type, discarding")
            return None, True
        return _decode_or_recover(raw, key)

    async def apply(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[float],
        cost: float,
    ) -> StoreOutcome:
        ttl = config.effective_ttl_seconds
        try:
            async with self._get_redis().pipeline(transaction=True) as pipe:
                for attempt in range(1, self._max_attempts + 1):
                    try:
                        await pipe.watch(key)
                        state, recovered = await self._read(pipe, key)
                        # Server time is read again on every attempt
                        attempt_now = now
                        if attempt_now is None:
                            seconds, micros = await pipe.time()
                            attempt_now = seconds + micros / 1_000_000
                        new_state, decision = compute(state, config, attempt_now, cost)

                        pipe.multi()
                        if recovered:
                            pipe.delete(key)
                        pipe.hset(key, mapping=encode_state(new_state))
                        if ttl is not None:
                            pipe.expire(key, ttl)
                        else:
                            pipe.persist(key)
                        await pipe.execute()
                        return StoreOutcome(decision=decision, recovered=recovered)
                    except redis.WatchError:
                        logger.debug(f"Bucket {key} changed during transaction (attempt {attempt})")
                    finally:
                        await pipe.reset()
        except redis.RedisError as e:
            raise self._unavailable(e) from e

        raise StoreUnavailable("contention")


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("ascii")
    return str(value)


def create_store(
    redis_client: Optional[Any] = None,
    redis_url: Optional[str] = None,
    use_redis: Optional[bool] = None,
    strategy: Optional[str] = None,
) -> BucketStore:
    """Select a store backend from settings.

    Args:
        redis_client: Optional Redis client instance
        redis_url: Redis connection URL
        use_redis: Force Redis usage (None = auto-detect from settings)
        strategy: "script" or "cas" (None = settings.rate_limit_store_strategy)
    """
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
    if not should_use_redis:
        logger.debug("Using in-memory bucket store")
        return InMemoryBucketStore()

    strategy = strategy or settings.rate_limit_store_strategy
    if strategy == "cas":
        logger.info("Using Redis WATCH/MULTI bucket store")
        return RedisCASBucketStore(redis_client=redis_client, redis_url=redis_url)
    logger.info("Using Redis Lua script bucket store")
    return RedisScriptBucketStore(redis_client=redis_client, redis_url=redis_url)
