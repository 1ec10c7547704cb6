"""Shared fixtures: a fake clock and an in-process Redis double.

The Redis double mirrors the token bucket Lua script and WATCH/MULTI/EXEC
semantics closely enough to exercise the Redis stores without a server.
"""

import asyncio
import hashlib
import math
import time
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import NoScriptError, WatchError

from bucketgate.app.services.token_bucket import reset_rate_limiter


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _lua_number(value):
    """tonumber() as the script sees it; None when not a number."""
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    try:
        return float(value)
    except ValueError:
        return None


class FakePipeline:
    """Optimistic transaction double with WATCH version tracking."""

    def __init__(self, redis):
        self._redis = redis
        self._watched = {}
        self._queue = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.reset()

    async def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._redis.versions.get(key, 0)

    async def hgetall(self, key):
        # Yield so concurrent transactions interleave between read and write
        await asyncio.sleep(0)
        return await self._redis.hgetall(key)

    async def time(self):
        return await self._redis.time()

    def multi(self):
        self._queue = []

    def delete(self, key):
        self._queue.append(("delete", key, None))
        return self

    def hset(self, key, mapping):
        self._queue.append(("hset", key, mapping))
        return self

    def expire(self, key, ttl):
        self._queue.append(("expire", key, ttl))
        return self

    def persist(self, key):
        self._queue.append(("persist", key, None))
        return self

    async def execute(self):
        redis = self._redis
        if redis.interfere > 0:
            redis.interfere -= 1
            for key in self._watched:
                redis.versions[key] = redis.versions.get(key, 0) + 1
        for key, version in self._watched.items():
            if redis.versions.get(key, 0) != version:
                raise WatchError("Watched variable changed.")
        results = []
        for op, key, arg in self._queue or []:
            if op == "delete":
                results.append(int(redis.hashes.pop(key, None) is not None))
                redis.ttls.pop(key, None)
            elif op == "hset":
                redis.hashes.setdefault(key, {}).update(
                    {k.encode(): str(v).encode() for k, v in arg.items()}
                )
                results.append(len(arg))
            elif op == "expire":
                redis.ttls[key] = arg
                results.append(1)
            elif op == "persist":
                redis.ttls.pop(key, None)
                results.append(1)
            redis.versions[key] = redis.versions.get(key, 0) + 1
        redis.transactions += 1
        return results

    async def reset(self):
        self._watched = {}
        self._queue = None


class FakeRedis:
    """Redis double storing hashes as bytes, like a real server reply."""

    def __init__(self, server_time: float = 1_700_000_000.0):
        self.hashes = {}
        self.ttls = {}
        self.versions = {}
        self.scripts = set()
        self.server_time = server_time
        self.interfere = 0
        self.transactions = 0
        self.script_calls = 0
        self.aclose = AsyncMock()

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        self.ttls.pop(key, None)
        self.versions[key] = self.versions.get(key, 0) + 1
        return int(self.hashes.pop(key, None) is not None)

    async def time(self):
        seconds = int(self.server_time)
        return seconds, int(round((self.server_time - seconds) * 1_000_000))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def evalsha(self, sha, numkeys, *args):
        if sha not in self.scripts:
            raise NoScriptError("NOSCRIPT No matching script. Please use EVAL.")
        return await self._token_bucket(*args)

    async def eval(self, script, numkeys, *args):
        self.scripts.add(hashlib.sha1(script.encode()).hexdigest())
        return await self._token_bucket(*args)

    async def _token_bucket(self, key, refill_rate, capacity, now, cost, ttl):
        """Python transcription of TOKEN_BUCKET_SCRIPT."""
        await asyncio.sleep(0)
        self.script_calls += 1
        refill_rate = float(refill_rate)
        capacity = float(capacity)
        now = float(now)
        cost = float(cost)
        ttl = int(ttl)

        if now < 0:
            now = self.server_time

        tokens = capacity
        last_refill = now
        recovered = 0

        raw = self.hashes.get(key)
        if raw:
            stored_tokens = _lua_number(raw.get(b"tokens"))
            stored_ts = _lua_number(raw.get(b"ts"))
            if (
                stored_tokens is not None
                and stored_ts is not None
                and stored_tokens == stored_tokens
                and 0 <= stored_tokens < math.inf
                and stored_ts >= 0
            ):
                tokens = stored_tokens
                last_refill = stored_ts / 1_000_000
            else:
                recovered = 1

        delta = max(0.0, now - last_refill)
        refilled = max(0.0, min(capacity, tokens + delta * refill_rate))

        allowed = 0
        retry_after = "0"
        if refilled >= cost:
            tokens = refilled - cost
            allowed = 1
        else:
            tokens = refilled
            if cost > capacity or refill_rate == 0:
                retry_after = "inf"
            else:
                retry_after = "%.17g" % max(0.0, (cost - refilled) / refill_rate)

        encoded_tokens = "%.17g" % tokens
        self.hashes.setdefault(key, {}).update({
            b"v": b"1",
            b"tokens": encoded_tokens.encode(),
            b"ts": ("%.0f" % (now * 1_000_000)).encode(),
        })
        if ttl > 0:
            self.ttls[key] = ttl
        else:
            self.ttls.pop(key, None)
        self.versions[key] = self.versions.get(key, 0) + 1

        return [allowed, encoded_tokens.encode(), retry_after.encode(), recovered]


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis(server_time=time.time())
