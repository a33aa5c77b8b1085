"""Admission control over a shared token budget.

Callers ask ``decide`` whether a unit of work may run now. Admitted callers
hold a concurrency slot until they call ``release`` (or the slot expires on
its own). Ground-truth feedback from the rate-limited system is pushed with
``sync`` and overrides the internal estimate until it expires.
"""

import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from bucketguard.app.core.config import Settings, settings as default_settings
from bucketguard.app.core.logging import get_log_context, get_logger
from bucketguard.app.exceptions import ConfigurationError

from .backends import AdmissionBackend, RedisAdmissionBackend
from .models import SOURCE_FALLBACK, AdmissionDecision, TenantState, ThrottleSnapshot, parse_config

logger = get_logger(__name__)


class AdmissionService:
    """Facade over a budget store backend.

    Provides:
    - Atomic admission decisions with dynamic safety margins
    - Floor-protected concurrency release
    - External throttle state synchronization
    - Tenant cleanup, state inspection and debug traces

    The backend is injected; build one with ``from_url`` or
    ``from_settings`` for Redis, or pass an InMemoryAdmissionBackend.
    """

    def __init__(self, backend: AdmissionBackend) -> None:
        self._backend = backend

    @classmethod
    def from_url(cls, redis_url: str, **kwargs: Any) -> "AdmissionService":
        """Create a service backed by Redis at ``redis_url``."""
        return cls(RedisAdmissionBackend(redis_url=redis_url, **kwargs))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AdmissionService":
        """Create a Redis-backed service from Settings."""
        settings = settings or default_settings
        return cls(
            RedisAdmissionBackend(
                redis_url=settings.redis_url,
                key_prefix=settings.redis_key_prefix,
                concurrency_ttl_seconds=settings.concurrency_ttl_seconds,
                throttle_state_ttl_seconds=settings.throttle_state_ttl_seconds,
                debug_trace_max_entries=settings.debug_trace_max_entries,
            )
        )

    @property
    def backend(self) -> AdmissionBackend:
        return self._backend

    async def decide(self, tenant: str, cost: float, config: Any) -> AdmissionDecision:
        """Decide whether ``cost`` may be spent by ``tenant`` now.

        Args:
            tenant: Tenant identifier
            cost: Nominal cost of the unit of work (>= 0)
            config: RateLimitConfig, or a mapping accepted by it

        Returns:
            AdmissionDecision; a rejection is a normal result, not an error

        Raises:
            ConfigurationError: invalid config, cost or tenant (no state touched)
            StoreUnavailableError: the store failed; outcome unknown
        """
        _check_tenant(tenant)
        rate_config = parse_config(config)
        cost = _check_cost(cost)

        decision = await self._backend.decide(tenant, cost, rate_config)

        if decision.source == SOURCE_FALLBACK:
            logger.warning(
                f"Ignoring malformed throttle state for {tenant}; using internal estimate",
                extra=get_log_context(tenant=tenant, source=decision.source),
            )
        if not decision.allowed:
            logger.debug(
                f"Admission rejected for {tenant}: wait {decision.wait_time_ms}ms",
                extra=get_log_context(
                    tenant=tenant,
                    decision="rejected",
                    source=decision.source,
                    cost=cost,
                    wait_time_ms=decision.wait_time_ms,
                    remaining=decision.remaining,
                ),
            )
        return decision

    async def release(self, tenant: str) -> int:
        """Release one concurrency slot; safe to call without an admission.

        Returns:
            The counter value after the release (never negative)
        """
        _check_tenant(tenant)
        return await self._backend.release(tenant)

    async def sync(self, tenant: str, snapshot: Any) -> None:
        """Make externally observed throttle state authoritative for a while.

        Args:
            tenant: Tenant identifier
            snapshot: ThrottleSnapshot, or a mapping with maximumAvailable,
                currentlyAvailable and restoreRate

        Raises:
            MalformedThrottleStateError: snapshot failed validation; nothing written
            StoreUnavailableError: the store failed
        """
        _check_tenant(tenant)
        throttle = ThrottleSnapshot.parse(snapshot)
        await self._backend.sync(tenant, throttle)
        logger.debug(
            f"Synced throttle state for {tenant}: "
            f"{throttle.currently_available}/{throttle.maximum_available} "
            f"at {throttle.restore_rate}/s",
            extra=get_log_context(tenant=tenant, source="external"),
        )

    async def cleanup(self, tenant: str) -> None:
        """Delete every key the tenant owns. Idempotent."""
        _check_tenant(tenant)
        await self._backend.cleanup(tenant)
        logger.info(f"Cleaned up admission state for {tenant}", extra=get_log_context(tenant=tenant))

    async def get_state(self, tenant: str) -> TenantState:
        """Read the stored state for diagnostics (no decay applied)."""
        _check_tenant(tenant)
        return await self._backend.get_state(tenant)

    async def get_debug_trace(self, tenant: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return decisions traced with ``debug=True``, newest first."""
        _check_tenant(tenant)
        if limit is not None and limit < 1:
            raise ValueError("limit must be at least 1")
        return await self._backend.get_debug_trace(tenant, limit)

    @asynccontextmanager
    async def admit(self, tenant: str, cost: float, config: Any) -> AsyncIterator[AdmissionDecision]:
        """Decide, and release the concurrency slot on exit if admitted.

        Example:
            >>> async with service.admit("shop-1", 50, config) as decision:
            ...     if decision.allowed:
            ...         await call_api()
        """
        decision = await self.decide(tenant, cost, config)
        try:
            yield decision
        finally:
            if decision.allowed:
                await self.release(tenant)

    async def close(self) -> None:
        """Close the underlying backend."""
        await self._backend.close()


def _check_cost(cost: float) -> float:
    """Return ``cost`` as a float, raising ConfigurationError if unusable."""
    message = f"cost must be a finite number >= 0, got {cost!r}"
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        raise ConfigurationError(message, field="cost")
    try:
        cost = float(cost)
    except OverflowError as e:
        raise ConfigurationError(message, field="cost") from e
    if not math.isfinite(cost) or cost < 0:
        raise ConfigurationError(message, field="cost")
    return cost


def _check_tenant(tenant: str) -> None:
    if not isinstance(tenant, str) or not tenant:
        raise ConfigurationError(f"tenant must be a non-empty string, got {tenant!r}", field="tenant")
