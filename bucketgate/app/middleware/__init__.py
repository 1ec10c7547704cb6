"""Middleware package for the rate limiter."""

from bucketgate.app.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "RateLimitMiddleware",
]
