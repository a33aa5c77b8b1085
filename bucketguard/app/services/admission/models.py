"""Data models for admission control."""

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bucketguard.app.exceptions import ConfigurationError, MalformedThrottleStateError

SOURCE_INTERNAL = "internal"
SOURCE_EXTERNAL = "external"
SOURCE_FALLBACK = "internal-fallback"


class RateLimitConfig(BaseModel):
    """Per-call bucket parameters supplied by the caller.

    Field names are snake_case; the camelCase names used by throttle
    feedback payloads (``bucketCapacity``, ``tokensPerSecond`` ...) are
    accepted as aliases.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        strict=True,
        extra="forbid",
        allow_inf_nan=False,
    )

    bucket_capacity: float = Field(..., gt=0, alias="bucketCapacity")
    tokens_per_second: float = Field(..., gt=0, alias="tokensPerSecond")
    max_concurrency: int = Field(5, gt=0, alias="maxConcurrency")
    base_margin: float = Field(70, ge=0, alias="baseMargin")
    concurrency_multiplier: float = Field(10, ge=0, alias="concurrencyMultiplier")
    # Recorded in debug traces; the adjusted-cost formula scales by
    # effective_concurrency / max_concurrency directly.
    concurrency_factor: float = Field(0.2, ge=0, alias="concurrencyFactor")
    base_factor: float = Field(1.1, gt=0, alias="baseFactor")
    debug: bool = False


def parse_config(config: Any) -> RateLimitConfig:
    """Return a validated RateLimitConfig or raise ConfigurationError."""
    if isinstance(config, RateLimitConfig):
        return config
    if config is None:
        raise ConfigurationError("config is required")
    try:
        return RateLimitConfig.model_validate(config)
    except ValidationError as e:
        error = e.errors()[0]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        raise ConfigurationError(f"{loc}: {error['msg']}", field=loc or None) from e


class ThrottleSnapshot(BaseModel):
    """Ground-truth bucket state reported by the rate-limited system."""

    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        strict=True,
        allow_inf_nan=False,
    )

    maximum_available: float = Field(..., gt=0, alias="maximumAvailable")
    currently_available: float = Field(..., ge=0, alias="currentlyAvailable")
    restore_rate: float = Field(..., gt=0, alias="restoreRate")

    @classmethod
    def parse(cls, snapshot: Any) -> "ThrottleSnapshot":
        """Validate sync() input, raising MalformedThrottleStateError."""
        if isinstance(snapshot, cls):
            return snapshot
        try:
            return cls.model_validate(snapshot)
        except ValidationError as e:
            error = e.errors()[0]
            loc = ".".join(str(part) for part in error.get("loc", ()))
            raise MalformedThrottleStateError(f"{loc}: {error['msg']}") from e

    @classmethod
    def from_stored(cls, stored: Mapping[str, Any]) -> Optional["ThrottleSnapshot"]:
        """Parse a stored field mapping, returning None if anything is off.

        Values come back from the store as strings (or bytes); a missing
        field, a non-numeric value or an out-of-range number makes the whole
        snapshot unusable.
        """
        try:
            values = {
                name: float(_to_str(stored[name]))
                for name in ("maximumAvailable", "currentlyAvailable", "restoreRate")
            }
            return cls.model_validate(values)
        except (KeyError, TypeError, ValueError):
            return None

    def to_stored(self) -> dict[str, str]:
        """Field mapping as written to the store."""
        return {
            "maximumAvailable": repr(float(self.maximum_available)),
            "currentlyAvailable": repr(float(self.currently_available)),
            "restoreRate": repr(float(self.restore_rate)),
        }


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of a single admission decision.

    Attributes:
        allowed: Whether the work may proceed
        wait_time_ms: Advisory wait before retrying (0 when allowed)
        remaining: Effective capacity left after this decision
        source: Where the bucket parameters came from ('internal',
            'external' or 'internal-fallback')
    """
    allowed: bool
    wait_time_ms: int
    remaining: float
    source: str = field(default=SOURCE_INTERNAL)

    @property
    def retry_after_seconds(self) -> int:
        """Wait time rounded up to whole seconds, as used by Retry-After."""
        return math.ceil(self.wait_time_ms / 1000)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "allowed": self.allowed,
            "wait_time_ms": self.wait_time_ms,
            "remaining": self.remaining,
            "source": self.source,
        }


@dataclass
class TenantState:
    """Read-only view of a tenant's stored budget state."""
    tenant: str
    consumed_tokens: float = 0.0
    last_update_ms: Optional[int] = None
    concurrency: int = 0
    throttle: Optional[ThrottleSnapshot] = None

    def to_dict(self) -> dict:
        return {
            "tenant": self.tenant,
            "consumed_tokens": self.consumed_tokens,
            "last_update_ms": self.last_update_ms,
            "concurrency": self.concurrency,
            "throttle": self.throttle.model_dump(by_alias=True) if self.throttle else None,
        }
