"""Token bucket engine.

Pure computation of lazy refill and consumption. No I/O, no locks and no
clock reads: the caller supplies ``now`` and persists the returned state.
"""

import math
from typing import Optional, Tuple

from .models import BucketState, Decision, DecisionReason, RateLimitConfig


def initial_state(config: RateLimitConfig, now: float) -> BucketState:
    """State of a bucket that has never been seen: full, refilled now."""
    return BucketState(tokens=config.capacity, last_refill=now)


def compute(
    state: Optional[BucketState],
    config: RateLimitConfig,
    now: float,
    cost: float,
) -> Tuple[BucketState, Decision]:
    """Refill the bucket up to ``now`` and try to take ``cost`` tokens.

    Args:
        state: Current state, or None for the first request of a key
        config: Bucket policy
        now: Current time in seconds
        cost: Tokens requested

    Returns:
        Tuple of (new state, decision). The new state's last_refill is
        always ``now``, even on denial, so denied requests never build up
        a refill backlog.

    Raises:
        ValueError: If cost is negative or not finite
    """
    if not math.isfinite(cost) or cost < 0:
        raise ValueError(f"cost must be a finite number >= 0, got {cost}")

    if state is None:
        state = initial_state(config, now)

    # Clock skew between callers may deliver an older "now"; never refill negatively
    delta = max(0.0, now - state.last_refill)
    refilled = min(config.capacity, state.tokens + delta * config.refill_rate)
    refilled = max(0.0, refilled)

    if refilled >= cost:
        new_tokens = refilled - cost
        allowed = True
        reason = DecisionReason.ALLOWED
        retry_after = 0.0
    else:
        new_tokens = refilled
        allowed = False
        if cost > config.capacity:
            reason = DecisionReason.COST_EXCEEDS_CAPACITY
            retry_after = math.inf
        else:
            reason = DecisionReason.RATE_LIMITED
            retry_after = _retry_after(cost - refilled, config.refill_rate)

    new_state = BucketState(tokens=new_tokens, last_refill=now)
    decision = Decision(
        allowed=allowed,
        remaining=new_tokens,
        retry_after=retry_after,
        limit=config.capacity,
        reason=reason,
    )
    return new_state, decision


def _retry_after(missing: float, refill_rate: float) -> float:
    if refill_rate == 0:
        return math.inf
    return max(0.0, missing / refill_rate)
