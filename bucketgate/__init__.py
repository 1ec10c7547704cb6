"""Distributed token bucket rate limiter."""
