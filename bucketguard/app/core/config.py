from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Per-call bucket parameters are not part of the settings; callers pass a
    RateLimitConfig with every decision.
    """

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "bucketguard"
    redis_socket_timeout: float = 5.0  # Seconds per command, 0 disables

    # State expiry
    concurrency_ttl_seconds: int = 10  # Counter self-heals after 10s idle
    throttle_state_ttl_seconds: int = 10  # External snapshot lifetime

    # Debug trace ring buffer size per tenant
    debug_trace_max_entries: int = 1000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator("redis_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Strip separators so keys never contain empty segments."""
        v = v.strip().strip(":")
        if not v:
            raise ValueError("redis_key_prefix must not be empty")
        return v

    @field_validator("redis_socket_timeout")
    @classmethod
    def validate_socket_timeout(cls, v: float) -> float:
        if v < 0:
            raise ValueError("redis_socket_timeout must not be negative")
        return v

    @field_validator("concurrency_ttl_seconds", "throttle_state_ttl_seconds")
    @classmethod
    def validate_ttl_positive(cls, v: int) -> int:
        """Validate TTL values are positive."""
        if v < 1:
            raise ValueError("TTL values must be at least 1 second")
        return v

    @field_validator("debug_trace_max_entries")
    @classmethod
    def validate_trace_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("debug_trace_max_entries must be at least 1")
        if v > 100000:
            raise ValueError("debug_trace_max_entries should not exceed 100000")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
