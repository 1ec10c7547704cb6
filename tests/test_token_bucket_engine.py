"""Tests for the pure token bucket engine."""

import math
import random

import pytest

from bucketgate.app.exceptions import ConfigurationError
from bucketgate.app.services.token_bucket import (
    BucketState,
    DecisionReason,
    FailurePolicy,
    RateLimitConfig,
    compute,
    initial_state,
)


def run(config, calls):
    """Feed (now, cost) pairs through the engine, returning decisions."""
    state = None
    decisions = []
    for now, cost in calls:
        state, decision = compute(state, config, now, cost)
        decisions.append(decision)
    return state, decisions


class TestScenarios:
    """Reference scenarios for the refill and consumption math."""

    def test_burst_then_denial(self):
        """Ten calls drain a 10-token bucket; the eleventh waits one second."""
        config = RateLimitConfig(refill_rate=1, capacity=10)
        _, decisions = run(config, [(0, 1)] * 11)

        for i, decision in enumerate(decisions[:10]):
            assert decision.allowed is True
            assert decision.remaining == 9 - i
        assert decisions[10].allowed is False
        assert decisions[10].retry_after == 1.0
        assert decisions[10].reason is DecisionReason.RATE_LIMITED

    def test_refill_after_idle(self):
        """Five seconds later five tokens are back; one is consumed."""
        config = RateLimitConfig(refill_rate=1, capacity=10)
        state, decisions = run(config, [(0, 1)] * 11)
        assert decisions[-1].allowed is False

        state, decision = compute(state, config, 5, 1)
        assert decision.allowed is True
        assert decision.remaining == 4

    def test_partial_refill_is_not_enough(self):
        """0.1s at 5 tokens/s gives half a token, short of one."""
        config = RateLimitConfig(refill_rate=5, capacity=5)
        state, decisions = run(config, [(0, 1)] * 5)
        assert all(d.allowed for d in decisions)

        state, decision = compute(state, config, 0.1, 1)
        assert decision.allowed is False
        assert state.tokens == pytest.approx(0.5)
        assert decision.retry_after == pytest.approx(0.1)

    def test_cost_above_capacity_never_allowed(self):
        config = RateLimitConfig(refill_rate=1, capacity=5)
        state = None
        for now in (0, 10, 1000, 10 ** 6):
            state, decision = compute(state, config, now, 10)
            assert decision.allowed is False
            assert decision.retry_after == math.inf
            assert decision.reason is DecisionReason.COST_EXCEEDS_CAPACITY


class TestEdgeCases:
    def test_zero_refill_rate_never_replenishes(self):
        config = RateLimitConfig(refill_rate=0, capacity=2)
        state, decisions = run(config, [(0, 1), (0, 1), (3600, 1)])
        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[-1].retry_after == math.inf
        assert state.tokens == 0

    def test_clock_going_backwards_does_not_drain(self):
        """An older "now" refills nothing and takes nothing extra."""
        config = RateLimitConfig(refill_rate=1, capacity=10)
        state = BucketState(tokens=3, last_refill=100)
        new_state, decision = compute(state, config, 90, 1)
        assert decision.allowed is True
        assert new_state.tokens == 2
        assert new_state.last_refill == 90

    def test_zero_cost_is_always_allowed(self):
        config = RateLimitConfig(refill_rate=0, capacity=1)
        state = BucketState(tokens=0, last_refill=0)
        new_state, decision = compute(state, config, 0, 0)
        assert decision.allowed is True
        assert new_state.tokens == 0

    @pytest.mark.parametrize("cost", [-1, math.nan, math.inf])
    def test_invalid_cost_rejected(self, cost):
        config = RateLimitConfig(refill_rate=1, capacity=1)
        with pytest.raises(ValueError):
            compute(None, config, 0, cost)

    def test_stored_tokens_above_capacity_are_clamped(self):
        """A lowered capacity takes effect on the next access."""
        config = RateLimitConfig(refill_rate=1, capacity=5)
        state = BucketState(tokens=50, last_refill=0)
        new_state, decision = compute(state, config, 0, 1)
        assert new_state.tokens == 4
        assert decision.remaining == 4


class TestProperties:
    def test_first_access_equals_full_bucket(self):
        config = RateLimitConfig(refill_rate=2, capacity=7)
        for cost in (0, 1, 3.5, 7, 8):
            assert compute(None, config, 42, cost) == compute(
                BucketState(tokens=7, last_refill=42), config, 42, cost
            )
        assert initial_state(config, 42) == BucketState(tokens=7, last_refill=42)

    def test_capacity_invariant_and_refill_clock(self):
        rng = random.Random(1234)
        config = RateLimitConfig(refill_rate=3.7, capacity=12.5)
        state = None
        now = 0.0
        for _ in range(2000):
            now += rng.choice([0, 0, 0.01, 0.3, 2.0, 10.0]) * rng.random()
            cost = rng.choice([0, 1, 1, 2.5, 5, 13])
            state, decision = compute(state, config, now, cost)
            assert 0 <= state.tokens <= config.capacity
            assert state.last_refill == now
            assert decision.remaining == state.tokens

    def test_denial_storm_grants_no_extra_tokens(self):
        """Denied calls advance the refill clock, so no backlog accumulates."""
        config = RateLimitConfig(refill_rate=1, capacity=10)
        state = BucketState(tokens=0, last_refill=0)
        # Cost 10 is never satisfiable while the bucket refills 1/s
        for t in range(1, 8):
            state, decision = compute(state, config, t * 0.5, 10)
            assert decision.allowed is False

        elapsed = 3.5
        state, decision = compute(state, config, elapsed, 1)
        assert decision.allowed is True
        assert decision.remaining + 1 <= min(config.capacity, 0 + elapsed * config.refill_rate)


class TestRateLimitConfig:
    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"refill_rate": 1, "capacity": 0}, "capacity"),
            ({"refill_rate": 1, "capacity": -5}, "capacity"),
            ({"refill_rate": -1, "capacity": 5}, "refill_rate"),
            ({"refill_rate": math.nan, "capacity": 5}, "refill_rate"),
            ({"refill_rate": 1, "capacity": "ten"}, "capacity"),
            ({"refill_rate": 1, "capacity": 5, "default_cost": 6}, "default_cost"),
            ({"refill_rate": 1, "capacity": 5, "state_ttl_seconds": 0}, "state_ttl_seconds"),
            ({"refill_rate": 1, "capacity": 5, "failure_policy": "sideways"}, "failure_policy"),
        ],
    )
    def test_invalid_config_fails_fast(self, kwargs, field):
        with pytest.raises(ConfigurationError) as exc_info:
            RateLimitConfig(**kwargs)
        assert exc_info.value.field == field

    def test_numbers_stored_as_floats(self):
        config = RateLimitConfig(refill_rate=2, capacity=10, default_cost=1)
        assert type(config.refill_rate) is float
        assert type(config.capacity) is float
        assert type(config.default_cost) is float

        new_state, decision = compute(None, config, 0, 1)
        assert type(new_state.tokens) is float
        assert type(decision.remaining) is float
        assert type(decision.limit) is float

    def test_failure_policy_accepts_strings(self):
        config = RateLimitConfig(refill_rate=1, capacity=5, failure_policy="closed")
        assert config.failure_policy is FailurePolicy.CLOSED

    def test_effective_ttl_covers_full_refill(self):
        assert RateLimitConfig(refill_rate=1, capacity=10).effective_ttl_seconds == 60
        assert RateLimitConfig(refill_rate=1, capacity=100).effective_ttl_seconds == 100
        assert RateLimitConfig(refill_rate=0.3, capacity=100, state_ttl_seconds=5).effective_ttl_seconds == 334
        assert RateLimitConfig(refill_rate=0, capacity=10).effective_ttl_seconds is None

    def test_make_key(self):
        config = RateLimitConfig(refill_rate=1, capacity=1, key_prefix="rl:login")
        assert config.make_key("ip:abc") == "rl:login:ip:abc"
