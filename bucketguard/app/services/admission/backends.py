"""Budget store backends for admission control.

Every backend must run a whole decision (read, decide, write) as one
indivisible step per tenant. The Redis backend gets that from Lua scripts;
the in-memory backend from a single asyncio.Lock, so it is only suitable
for a single process (tests, local development, one-worker deployments).
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, NamedTuple, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bucketguard.app.core.config import settings
from bucketguard.app.core.logging import get_logger
from bucketguard.app.exceptions import StoreUnavailableError

from .bucket import MAX_WAIT_TIME_MS, evaluate_admission
from .models import (
    SOURCE_EXTERNAL,
    SOURCE_FALLBACK,
    SOURCE_INTERNAL,
    AdmissionDecision,
    RateLimitConfig,
    TenantState,
    ThrottleSnapshot,
)
from .redis_lua import DECIDE_SCRIPT, RELEASE_SCRIPT

logger = get_logger(__name__)

_SOURCES = (SOURCE_INTERNAL, SOURCE_EXTERNAL, SOURCE_FALLBACK)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class AdmissionBackend(ABC):
    """Abstract base class for budget store backends."""

    @abstractmethod
    async def decide(self, tenant: str, cost: float, config: RateLimitConfig) -> AdmissionDecision:
        """Atomically decide and, when admitted, consume budget.

        Args:
            tenant: Tenant identifier
            cost: Nominal cost, already validated
            config: Validated bucket parameters

        Returns:
            AdmissionDecision
        """

    @abstractmethod
    async def release(self, tenant: str) -> int:
        """Release one concurrency slot, never going below zero.

        Returns:
            The counter value after the release
        """

    @abstractmethod
    async def sync(self, tenant: str, snapshot: ThrottleSnapshot) -> None:
        """Replace the tenant's external throttle snapshot."""

    @abstractmethod
    async def cleanup(self, tenant: str) -> None:
        """Delete all state for the tenant."""

    @abstractmethod
    async def get_state(self, tenant: str) -> TenantState:
        """Read the tenant's stored state without modifying it."""

    @abstractmethod
    async def get_debug_trace(self, tenant: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return debug trace entries, newest first."""

    async def close(self) -> None:
        """Release backend resources."""


@dataclass
class _TenantRecord:
    """Per-tenant state held by InMemoryAdmissionBackend."""
    consumed_tokens: Optional[float] = None
    last_update_ms: Optional[int] = None
    concurrency: int = 0
    concurrency_expires_ms: Optional[int] = None
    throttle_state: Optional[Dict[str, str]] = None
    throttle_expires_ms: Optional[int] = None
    debug_trace: Deque[Dict[str, Any]] = field(default_factory=deque)


class InMemoryAdmissionBackend(AdmissionBackend):
    """In-process budget store.

    State lives in a dict keyed by tenant and every operation runs under one
    asyncio.Lock. Expiry is evaluated lazily against the injected clock,
    which also stands in for the store clock.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        concurrency_ttl_seconds: Optional[int] = None,
        throttle_state_ttl_seconds: Optional[int] = None,
        debug_trace_max_entries: Optional[int] = None,
    ) -> None:
        """Initialize the in-memory backend.

        Args:
            clock: Callable returning the current time in milliseconds
            concurrency_ttl_seconds: Concurrency counter idle expiry
            throttle_state_ttl_seconds: External snapshot lifetime
            debug_trace_max_entries: Ring buffer size per tenant
        """
        self._clock = clock or _wall_clock_ms
        self._concurrency_ttl_ms = 1000 * (concurrency_ttl_seconds or settings.concurrency_ttl_seconds)
        self._throttle_ttl_ms = 1000 * (throttle_state_ttl_seconds or settings.throttle_state_ttl_seconds)
        self._debug_max_entries = debug_trace_max_entries or settings.debug_trace_max_entries
        self._records: Dict[str, _TenantRecord] = {}
        self._lock = asyncio.Lock()

    def _expire(self, record: _TenantRecord, now: int) -> None:
        if record.concurrency_expires_ms is not None and now >= record.concurrency_expires_ms:
            record.concurrency = 0
            record.concurrency_expires_ms = None
        if record.throttle_expires_ms is not None and now >= record.throttle_expires_ms:
            record.throttle_state = None
            record.throttle_expires_ms = None

    def _record(self, tenant: str, now: int) -> _TenantRecord:
        record = self._records.get(tenant)
        if record is None:
            record = _TenantRecord(debug_trace=deque(maxlen=self._debug_max_entries))
            self._records[tenant] = record
        self._expire(record, now)
        return record

    async def decide(self, tenant: str, cost: float, config: RateLimitConfig) -> AdmissionDecision:
        async with self._lock:
            now = self._clock()
            record = self._record(tenant, now)

            throttle = None
            if record.throttle_state is not None:
                throttle = ThrottleSnapshot.from_stored(record.throttle_state)

            evaluation = evaluate_admission(
                cost,
                config,
                now_ms=now,
                consumed_tokens=record.consumed_tokens or 0.0,
                last_update_ms=record.last_update_ms,
                concurrency=record.concurrency,
                throttle=throttle,
                throttle_malformed=record.throttle_state is not None and throttle is None,
            )

            if evaluation.decision.allowed:
                record.consumed_tokens = evaluation.consumed_tokens
                record.last_update_ms = now
                record.concurrency = max(0, record.concurrency) + 1
                record.concurrency_expires_ms = now + self._concurrency_ttl_ms

            if config.debug:
                record.debug_trace.appendleft(evaluation.trace)

            return evaluation.decision

    async def release(self, tenant: str) -> int:
        async with self._lock:
            record = self._records.get(tenant)
            if record is None:
                return 0
            now = self._clock()
            self._expire(record, now)
            if record.concurrency_expires_ms is None:
                return 0
            if record.concurrency > 0:
                record.concurrency -= 1
            elif record.concurrency < 0:
                record.concurrency = 0
                record.concurrency_expires_ms = now + self._concurrency_ttl_ms
            return record.concurrency

    async def sync(self, tenant: str, snapshot: ThrottleSnapshot) -> None:
        async with self._lock:
            now = self._clock()
            record = self._record(tenant, now)
            record.throttle_state = snapshot.to_stored()
            record.throttle_expires_ms = now + self._throttle_ttl_ms

    async def cleanup(self, tenant: str) -> None:
        async with self._lock:
            self._records.pop(tenant, None)

    async def get_state(self, tenant: str) -> TenantState:
        async with self._lock:
            record = self._records.get(tenant)
            if record is None:
                return TenantState(tenant=tenant)
            self._expire(record, self._clock())
            throttle = None
            if record.throttle_state is not None:
                throttle = ThrottleSnapshot.from_stored(record.throttle_state)
            return TenantState(
                tenant=tenant,
                consumed_tokens=record.consumed_tokens or 0.0,
                last_update_ms=record.last_update_ms,
                concurrency=max(0, record.concurrency),
                throttle=throttle,
            )

    async def get_debug_trace(self, tenant: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(tenant)
            if record is None:
                return []
            entries = [dict(entry) for entry in record.debug_trace]
            return entries if limit is None else entries[:limit]


class BudgetKeys(NamedTuple):
    """Redis keys holding one tenant's state."""
    tokens: str
    timestamp: str
    state: str
    concurrency: str
    debug: str


class RedisAdmissionBackend(AdmissionBackend):
    """Redis-based budget store for multi-instance deployments.

    Redis key format (the tenant is wrapped in a hash tag so that all of a
    tenant's keys land in the same cluster slot, as EVAL requires):
    - {prefix}:{{tenant}}:tokens - Consumed tokens (float)
    - {prefix}:{{tenant}}:timestamp - Last decay/consumption time, ms
    - {prefix}:{{tenant}}:state - External throttle snapshot (hash, TTL)
    - {prefix}:{{tenant}}:concurrent - In-flight counter (TTL)
    - {prefix}:{{tenant}}:debug - Debug trace (capped list)
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        concurrency_ttl_seconds: Optional[int] = None,
        throttle_state_ttl_seconds: Optional[int] = None,
        debug_trace_max_entries: Optional[int] = None,
    ) -> None:
        """Initialize the Redis backend.

        Args:
            redis_client: Existing redis.asyncio client; not closed by close()
            redis_url: Redis connection URL, used when no client is given
            key_prefix: Namespace for all keys
            concurrency_ttl_seconds: Concurrency counter idle expiry
            throttle_state_ttl_seconds: External snapshot lifetime
            debug_trace_max_entries: Ring buffer size per tenant
        """
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._redis_url = redis_url or settings.redis_url
        self._key_prefix = key_prefix or settings.redis_key_prefix
        self._concurrency_ttl = concurrency_ttl_seconds or settings.concurrency_ttl_seconds
        self._throttle_ttl = throttle_state_ttl_seconds or settings.throttle_state_ttl_seconds
        self._debug_max_entries = debug_trace_max_entries or settings.debug_trace_max_entries

    def _get_redis(self) -> Any:
        """Get or create the Redis client."""
        if self._redis is None:
            timeout = settings.redis_socket_timeout or None
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        return self._redis

    def make_keys(self, tenant: str) -> BudgetKeys:
        """Create the Redis keys for a tenant."""
        base = f"{self._key_prefix}:{{{tenant}}}"
        return BudgetKeys(
            tokens=f"{base}:tokens",
            timestamp=f"{base}:timestamp",
            state=f"{base}:state",
            concurrency=f"{base}:concurrent",
            debug=f"{base}:debug",
        )

    async def decide(self, tenant: str, cost: float, config: RateLimitConfig) -> AdmissionDecision:
        keys = self.make_keys(tenant)
        try:
            result = await self._get_redis().eval(
                DECIDE_SCRIPT,
                5,  # Number of keys
                keys.tokens,  # KEYS[1]
                keys.timestamp,  # KEYS[2]
                keys.state,  # KEYS[3]
                keys.concurrency,  # KEYS[4]
                keys.debug,  # KEYS[5]
                repr(float(cost)),  # ARGV[1]
                repr(float(config.tokens_per_second)),  # ARGV[2]
                repr(float(config.bucket_capacity)),  # ARGV[3]
                config.max_concurrency,  # ARGV[4]
                repr(float(config.base_margin)),  # ARGV[5]
                repr(float(config.concurrency_multiplier)),  # ARGV[6]
                repr(float(config.concurrency_factor)),  # ARGV[7]
                repr(float(config.base_factor)),  # ARGV[8]
                "1" if config.debug else "0",  # ARGV[9]
                self._concurrency_ttl,  # ARGV[10]
                self._debug_max_entries,  # ARGV[11]
                MAX_WAIT_TIME_MS,  # ARGV[12]
            )
        except RedisError as e:
            logger.error(f"Admission script failed for {tenant}: {e}")
            raise StoreUnavailableError("decide", tenant, str(e)) from e
        return self._parse_decision(tenant, result)

    @staticmethod
    def _parse_decision(tenant: str, result: Any) -> AdmissionDecision:
        """Convert the script reply {allowed, wait_ms, remaining, source}."""
        try:
            allowed, wait_time_ms, remaining, source = result
            source = source.decode() if isinstance(source, bytes) else str(source)
            if source not in _SOURCES:
                raise ValueError(f"unknown source {source!r}")
            return AdmissionDecision(
                allowed=int(allowed) == 1,
                wait_time_ms=int(wait_time_ms),
                remaining=float(remaining),
                source=source,
            )
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError("decide", tenant, f"unexpected script reply {result!r}") from e

    async def release(self, tenant: str) -> int:
        keys = self.make_keys(tenant)
        try:
            result = await self._get_redis().eval(
                RELEASE_SCRIPT,
                1,
                keys.concurrency,  # KEYS[1]
                self._concurrency_ttl,  # ARGV[1]
            )
        except RedisError as e:
            logger.error(f"Release script failed for {tenant}: {e}")
            raise StoreUnavailableError("release", tenant, str(e)) from e
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError("release", tenant, f"unexpected script reply {result!r}") from e

    async def sync(self, tenant: str, snapshot: ThrottleSnapshot) -> None:
        keys = self.make_keys(tenant)
        try:
            pipe = self._get_redis().pipeline(transaction=True)
            # Replace, never merge, a previous snapshot
            pipe.delete(keys.state)
            pipe.hset(keys.state, mapping=snapshot.to_stored())
            pipe.expire(keys.state, self._throttle_ttl)
            await pipe.execute()
        except RedisError as e:
            logger.error(f"Throttle sync failed for {tenant}: {e}")
            raise StoreUnavailableError("sync", tenant, str(e)) from e

    async def cleanup(self, tenant: str) -> None:
        # A multi-key DEL is a single atomic command
        try:
            await self._get_redis().delete(*self.make_keys(tenant))
        except RedisError as e:
            logger.error(f"Cleanup failed for {tenant}: {e}")
            raise StoreUnavailableError("cleanup", tenant, str(e)) from e

    async def get_state(self, tenant: str) -> TenantState:
        keys = self.make_keys(tenant)
        try:
            pipe = self._get_redis().pipeline(transaction=True)
            pipe.get(keys.tokens)
            pipe.get(keys.timestamp)
            pipe.get(keys.concurrency)
            pipe.hgetall(keys.state)
            tokens, timestamp, concurrency, state = await pipe.execute()
        except RedisError as e:
            logger.error(f"State read failed for {tenant}: {e}")
            raise StoreUnavailableError("get_state", tenant, str(e)) from e

        throttle = None
        if state:
            stored = {_decode(k): v for k, v in state.items()}
            throttle = ThrottleSnapshot.from_stored(stored)
        last_update = _as_float(timestamp)
        return TenantState(
            tenant=tenant,
            consumed_tokens=_as_float(tokens) or 0.0,
            last_update_ms=int(last_update) if last_update is not None else None,
            concurrency=max(0, int(_as_float(concurrency) or 0)),
            throttle=throttle,
        )

    async def get_debug_trace(self, tenant: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        keys = self.make_keys(tenant)
        end = -1 if limit is None else limit - 1
        try:
            entries = await self._get_redis().lrange(keys.debug, 0, end)
        except RedisError as e:
            logger.error(f"Debug trace read failed for {tenant}: {e}")
            raise StoreUnavailableError("get_debug_trace", tenant, str(e)) from e
        return [json.loads(entry) for entry in entries]

    async def close(self) -> None:
        """Close the Redis connection if this backend created it."""
        if self._redis is not None and self._owns_client:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(_decode(value))
    except ValueError:
        return None
