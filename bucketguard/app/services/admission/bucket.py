"""Token bucket arithmetic for admission decisions.

This is the same computation DECIDE_SCRIPT performs inside Redis; the
in-memory backend calls it while holding its lock. Operation order matters
for float reproducibility, so keep both in step when changing either.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import (
    SOURCE_EXTERNAL,
    SOURCE_FALLBACK,
    SOURCE_INTERNAL,
    AdmissionDecision,
    RateLimitConfig,
    ThrottleSnapshot,
)

# Below this share of remaining capacity, margins and cost start to inflate
LOW_CAPACITY_PCT = 30
# Below this share, margins get a further CRITICAL_MARGIN_SCALE boost
CRITICAL_CAPACITY_PCT = 10
CRITICAL_MARGIN_SCALE = 1.5
# Upper bound for wait_time_ms; the largest integer a double holds exactly
MAX_WAIT_TIME_MS = 2**53 - 1


@dataclass
class AdmissionEvaluation:
    """Result of evaluating one admission against a pre-image of the bucket.

    Attributes:
        decision: The decision returned to the caller
        consumed_tokens: Bucket level to persist when admitted
        trace: Debug trace entry (inputs, margins, decision)
    """
    decision: AdmissionDecision
    consumed_tokens: float
    trace: Dict[str, Any] = field(default_factory=dict)


def evaluate_admission(
    cost: float,
    config: RateLimitConfig,
    *,
    now_ms: int,
    consumed_tokens: float = 0.0,
    last_update_ms: Optional[int] = None,
    concurrency: int = 0,
    throttle: Optional[ThrottleSnapshot] = None,
    throttle_malformed: bool = False,
) -> AdmissionEvaluation:
    """Decide whether ``cost`` fits the tenant's bucket.

    Args:
        cost: Nominal cost of the unit of work
        config: Validated bucket parameters
        now_ms: Store clock in milliseconds
        consumed_tokens: Stored bucket level (0 when absent)
        last_update_ms: Stored timestamp of the last decay (now when absent)
        concurrency: Stored in-flight counter (negative values are clamped)
        throttle: Well-formed external snapshot, if any
        throttle_malformed: A snapshot was stored but failed validation

    Returns:
        AdmissionEvaluation; nothing is persisted here
    """
    bucket_capacity = config.bucket_capacity
    tokens_per_second = config.tokens_per_second
    max_concurrency = config.max_concurrency
    base_margin = config.base_margin
    concurrency_multiplier = config.concurrency_multiplier

    if last_update_ms is None:
        last_update_ms = now_ms
    concurrency = max(0, concurrency)

    source = SOURCE_FALLBACK if throttle_malformed else SOURCE_INTERNAL
    if throttle is not None:
        consumed_tokens = bucket_capacity - throttle.currently_available
        tokens_per_second = throttle.restore_rate
        bucket_capacity = throttle.maximum_available
        source = SOURCE_EXTERNAL

    elapsed_seconds = max(0, now_ms - last_update_ms) / 1000
    consumed_tokens = max(0, consumed_tokens - elapsed_seconds * tokens_per_second)

    effective_concurrency = concurrency + 1
    capacity_pct = 100 * (bucket_capacity - consumed_tokens) / bucket_capacity

    if capacity_pct < LOW_CAPACITY_PCT:
        scale = 1 + (LOW_CAPACITY_PCT - capacity_pct) / LOW_CAPACITY_PCT
        if capacity_pct < CRITICAL_CAPACITY_PCT:
            scale = scale * CRITICAL_MARGIN_SCALE
        base_margin = base_margin * scale
        concurrency_multiplier = concurrency_multiplier * scale

    safety_margin = base_margin + min(max_concurrency, effective_concurrency) * concurrency_multiplier
    effective_capacity = bucket_capacity - safety_margin

    capacity_factor = 1 + max(0, (LOW_CAPACITY_PCT - capacity_pct) / LOW_CAPACITY_PCT)
    concurrency_factor = 1 + effective_concurrency / max_concurrency
    adjusted_cost = cost * capacity_factor * concurrency_factor

    if consumed_tokens + adjusted_cost <= effective_capacity:
        new_consumed = consumed_tokens + adjusted_cost
        decision = AdmissionDecision(
            allowed=True,
            wait_time_ms=0,
            remaining=max(0, effective_capacity - new_consumed),
            source=source,
        )
    else:
        new_consumed = consumed_tokens
        tokens_needed = adjusted_cost + consumed_tokens - effective_capacity
        raw_wait_ms = tokens_needed / tokens_per_second * 1000 * config.base_factor * capacity_factor
        if raw_wait_ms >= MAX_WAIT_TIME_MS:
            wait_time_ms = MAX_WAIT_TIME_MS
        else:
            wait_time_ms = math.ceil(raw_wait_ms)
        decision = AdmissionDecision(
            allowed=False,
            wait_time_ms=wait_time_ms,
            remaining=max(0, effective_capacity - consumed_tokens),
            source=source,
        )

    trace = {
        "now": now_ms,
        "cost": cost,
        "consumed": consumed_tokens,
        "bucket_capacity": bucket_capacity,
        "tokens_per_second": tokens_per_second,
        "concurrency": concurrency,
        "effective_concurrency": effective_concurrency,
        "capacity_pct": capacity_pct,
        "base_margin": base_margin,
        "concurrency_multiplier": concurrency_multiplier,
        "concurrency_factor_config": config.concurrency_factor,
        "safety_margin": safety_margin,
        "effective_capacity": effective_capacity,
        "capacity_factor": capacity_factor,
        "concurrency_factor": concurrency_factor,
        # A huge cost can overflow; JSON has no infinity
        "adjusted_cost": adjusted_cost if math.isfinite(adjusted_cost) else None,
        "allowed": decision.allowed,
        "wait_time_ms": decision.wait_time_ms,
        "remaining": decision.remaining,
        "source": source,
    }
    return AdmissionEvaluation(decision=decision, consumed_tokens=new_consumed, trace=trace)
