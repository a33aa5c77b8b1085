"""Distributed admission control using Redis for multi-instance deployments.

This package decides, atomically per tenant, whether a unit of work fits a
shared token budget, using Redis Lua scripts (or an in-process store for
single-process use).
"""

from .backends import AdmissionBackend, BudgetKeys, InMemoryAdmissionBackend, RedisAdmissionBackend
from .bucket import AdmissionEvaluation, evaluate_admission
from .models import (
    AdmissionDecision,
    RateLimitConfig,
    TenantState,
    ThrottleSnapshot,
    parse_config,
)
from .redis_lua import DECIDE_SCRIPT, RELEASE_SCRIPT
from .service import AdmissionService

__all__ = [
    "AdmissionBackend",
    "BudgetKeys",
    "InMemoryAdmissionBackend",
    "RedisAdmissionBackend",
    "AdmissionEvaluation",
    "evaluate_admission",
    "AdmissionDecision",
    "RateLimitConfig",
    "TenantState",
    "ThrottleSnapshot",
    "parse_config",
    "DECIDE_SCRIPT",
    "RELEASE_SCRIPT",
    "AdmissionService",
]
