from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Token bucket defaults (bound once per limiter instance)
    rate_limit_refill_rate: float = 1.0  # Tokens added per second
    rate_limit_capacity: float = 10.0  # Maximum burst size
    rate_limit_default_cost: float = 1.0  # Tokens consumed when cost is omitted
    rate_limit_failure_policy: Literal["open", "closed"] = (
        "open"  # "closed" denies requests when Redis is unavailable
    )
    rate_limit_key_prefix: str = "ratelimit:bucket"
    rate_limit_state_ttl_seconds: int = 60  # Idle bucket expiry

    # Store access
    rate_limit_store_timeout_ms: int = 100  # Per-call budget for the atomic operation
    rate_limit_store_strategy: Literal["script", "cas"] = "script"
    rate_limit_cas_max_attempts: int = 3  # WATCH/MULTI retries before giving up
    rate_limit_use_store_clock: bool = False  # Use Redis TIME instead of local clock

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    @field_validator("rate_limit_capacity")
    @classmethod
    def validate_capacity_positive(cls, v: float) -> float:
        """Validate bucket capacity is positive."""
        if v <= 0:
            raise ValueError("rate_limit_capacity must be positive")
        return v

    @field_validator("rate_limit_refill_rate", "rate_limit_default_cost")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate refill rate and cost are not negative."""
        if v < 0:
            raise ValueError("Rate limit values must not be negative")
        return v

    @field_validator("rate_limit_state_ttl_seconds", "rate_limit_cas_max_attempts")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        """Validate TTL and retry counts are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("rate_limit_store_timeout_ms")
    @classmethod
    def validate_store_timeout(cls, v: int) -> int:
        """Validate the store timeout is within a sane request budget."""
        if v < 1:
            raise ValueError("rate_limit_store_timeout_ms must be positive")
        if v > 10000:
            raise ValueError("rate_limit_store_timeout_ms should not exceed 10 seconds")
        return v

    @model_validator(mode="after")
    def validate_default_cost_within_capacity(self) -> "Settings":
        """Validate a default-cost request can ever succeed."""
        if self.rate_limit_default_cost > self.rate_limit_capacity:
            raise ValueError(
                "rate_limit_default_cost must not exceed rate_limit_capacity"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
