"""Data models for token bucket rate limiting."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from bucketgate.app.exceptions import ConfigurationError, StoreUnavailable


class FailurePolicy(str, Enum):
    """Behaviour when the bucket store cannot be reached."""
    OPEN = "open"
    CLOSED = "closed"


class DecisionReason(str, Enum):
    """Why a decision was reached.

    Lets operators tell "you are rate limited" apart from
    "the limiter is broken".
    """
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    COST_EXCEEDS_CAPACITY = "cost_exceeds_capacity"
    STORE_UNAVAILABLE = "store_unavailable"
    UNENFORCED = "unenforced"


@dataclass(frozen=True)
class BucketState:
    """Token accounting for one identity key.

    Attributes:
        tokens: Tokens currently available, within [0, capacity]
        last_refill: Seconds since epoch of the last computation
    """
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable token bucket policy for one key class.

    Attributes:
        refill_rate: Tokens added per second
        capacity: Maximum tokens the bucket can hold (maximum burst)
        failure_policy: What to do when the store is unavailable
        key_prefix: Namespace prepended to every bucket key
        state_ttl_seconds: Minimum idle time before the store drops a bucket
        default_cost: Tokens consumed when the caller does not pass a cost
    """
    refill_rate: float
    capacity: float
    failure_policy: FailurePolicy = FailurePolicy.OPEN
    key_prefix: str = "ratelimit:bucket"
    state_ttl_seconds: int = 60
    default_cost: float = 1.0

    def __post_init__(self) -> None:
        for name in ("refill_rate", "capacity", "default_cost"):
            value = getattr(self, name)
            try:
                object.__setattr__(self, name, float(value))
            except (TypeError, ValueError):
                raise ConfigurationError(name, f"must be a number, got {value!r}") from None
        if not math.isfinite(self.capacity) or self.capacity <= 0:
            raise ConfigurationError("capacity", f"must be a positive number, got {self.capacity}")
        if not math.isfinite(self.refill_rate) or self.refill_rate < 0:
            raise ConfigurationError("refill_rate", f"must be >= 0, got {self.refill_rate}")
        if not math.isfinite(self.default_cost) or self.default_cost < 0:
            raise ConfigurationError("default_cost", f"must be >= 0, got {self.default_cost}")
        if self.default_cost > self.capacity:
            raise ConfigurationError(
                "default_cost",
                f"{self.default_cost} exceeds capacity {self.capacity}; requests could never succeed",
            )
        if self.state_ttl_seconds <= 0:
            raise ConfigurationError("state_ttl_seconds", f"must be positive, got {self.state_ttl_seconds}")
        # Accept plain strings ("open" / "closed") from callers and settings
        try:
            policy = FailurePolicy(self.failure_policy)
        except ValueError:
            raise ConfigurationError(
                "failure_policy", f"must be 'open' or 'closed', got {self.failure_policy!r}"
            ) from None
        object.__setattr__(self, "failure_policy", policy)

    @property
    def effective_ttl_seconds(self) -> Optional[int]:
        """TTL applied to bucket keys in the store.

        A key may only expire once it would have refilled completely,
        otherwise expiry would hand out a full bucket early. With no
        refill at all the key never expires.
        """
        if self.refill_rate == 0:
            return None
        full_refill = math.ceil(self.capacity / self.refill_rate)
        return max(self.state_ttl_seconds, full_refill)

    def make_key(self, key: str) -> str:
        """Create the store key for an identity key."""
        return f"{self.key_prefix}:{key}"

    @classmethod
    def from_settings(cls, settings: Any) -> "RateLimitConfig":
        """Build the instance-wide default policy from application settings."""
        return cls(
            refill_rate=settings.rate_limit_refill_rate,
            capacity=settings.rate_limit_capacity,
            failure_policy=settings.rate_limit_failure_policy,
            key_prefix=settings.rate_limit_key_prefix,
            state_ttl_seconds=settings.rate_limit_state_ttl_seconds,
            default_cost=settings.rate_limit_default_cost,
        )


@dataclass(frozen=True)
class Decision:
    """Result of one allow() invocation.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Tokens left after this decision
        retry_after: Seconds until the request could succeed (inf if never)
        limit: Bucket capacity, for reporting
        reason: Why the decision was reached
        error: Store failure behind a fail-closed denial, for diagnostics
    """
    allowed: bool
    remaining: float
    retry_after: float
    limit: float
    reason: DecisionReason = DecisionReason.ALLOWED
    error: Optional[StoreUnavailable] = field(default=None, compare=False)

    @property
    def enforced(self) -> bool:
        """False when the store was unreachable and the policy decided."""
        return self.reason not in (DecisionReason.UNENFORCED, DecisionReason.STORE_UNAVAILABLE)


@dataclass(frozen=True)
class StoreOutcome:
    """What a store returns from one atomic operation.

    Attributes:
        decision: Engine decision computed inside the atomic unit
        recovered: True when malformed stored state was replaced by a full bucket
    """
    decision: Decision
    recovered: bool = False
