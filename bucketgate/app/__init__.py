"""Rate limiter application package."""
