"""bucketguard - distributed token-bucket admission control."""

from bucketguard.app.exceptions import (
    AdmissionError,
    ConfigurationError,
    MalformedThrottleStateError,
    StoreUnavailableError,
)
from bucketguard.app.services.admission import (
    AdmissionBackend,
    AdmissionDecision,
    AdmissionService,
    InMemoryAdmissionBackend,
    RateLimitConfig,
    RedisAdmissionBackend,
    TenantState,
    ThrottleSnapshot,
)

__version__ = "0.1.0"

__all__ = [
    "AdmissionError",
    "ConfigurationError",
    "MalformedThrottleStateError",
    "StoreUnavailableError",
    "AdmissionBackend",
    "AdmissionDecision",
    "AdmissionService",
    "InMemoryAdmissionBackend",
    "RateLimitConfig",
    "RedisAdmissionBackend",
    "TenantState",
    "ThrottleSnapshot",
]
