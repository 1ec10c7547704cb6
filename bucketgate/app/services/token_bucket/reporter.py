"""Decision reporter.

Turns a ``Decision`` into the signals a protocol layer attaches to its
response. Presentation only: rounding and clamping, no rate limit logic.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .models import Decision, DecisionReason


@dataclass(frozen=True)
class RateLimitSignals:
    """Protocol-facing view of a decision.

    Attributes:
        allowed: Whether the request may proceed
        limit: Bucket capacity, floored
        remaining: Tokens left, floored and never negative
        retry_after: Whole seconds to wait, or None when allowed or when
            waiting can never help (cost above capacity, no refill)
        reason: Decision reason code
    """
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int]
    reason: str


class DecisionReporter:
    """Formats decisions as header-style fields and error bodies."""

    def __init__(
        self,
        limit_header: str = "X-RateLimit-Limit",
        remaining_header: str = "X-RateLimit-Remaining",
        retry_after_header: str = "Retry-After",
    ):
        self.limit_header = limit_header
        self.remaining_header = remaining_header
        self.retry_after_header = retry_after_header

    def signals(self, decision: Decision) -> RateLimitSignals:
        retry_after: Optional[int] = None
        if not decision.allowed and math.isfinite(decision.retry_after):
            retry_after = max(0, math.ceil(decision.retry_after))
        return RateLimitSignals(
            allowed=decision.allowed,
            limit=int(math.floor(decision.limit)),
            remaining=max(0, int(math.floor(decision.remaining))),
            retry_after=retry_after,
            reason=decision.reason.value,
        )

    def headers(self, decision: Decision) -> Dict[str, str]:
        """Header fields for a response.

        Retry-After is only present on denials that waiting can resolve.
        """
        signals = self.signals(decision)
        headers = {
            self.limit_header: str(signals.limit),
            self.remaining_header: str(signals.remaining),
        }
        if signals.retry_after is not None:
            headers[self.retry_after_header] = str(signals.retry_after)
        return headers

    def error_body(self, decision: Decision) -> Dict[str, Any]:
        """Error payload for a denied request."""
        signals = self.signals(decision)
        if decision.reason is DecisionReason.STORE_UNAVAILABLE:
            return {
                "error": "rate_limiter_unavailable",
                "message": "Rate limiter is unavailable. Please try again later.",
                "retry_after": signals.retry_after,
            }
        if decision.reason is DecisionReason.COST_EXCEEDS_CAPACITY:
            return {
                "error": "rate_limit_exceeded",
                "message": "Request cost exceeds the rate limit capacity and cannot be served.",
                "retry_after": None,
            }
        return {
            "error": "rate_limit_exceeded",
            "message": "Rate limit exceeded. Please try again later.",
            "retry_after": signals.retry_after,
        }
