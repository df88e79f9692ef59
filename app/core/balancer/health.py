from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from app.core.utils.time import utcnow
from app.db.models import HealthStatus

DEFAULT_DISABLE_SECONDS = 300
RESPONSE_TIME_EMA_ALPHA = 0.1
MIN_WEIGHT_SCORE = 0.1
# Response times at or beyond this many milliseconds bottom out the response-time factor.
RESPONSE_TIME_CEILING_MS = 10_000.0


class HealthTracked(Protocol):
    weight: int
    is_enabled: bool
    current_connections: int
    total_usage_count: int
    successful_requests: int
    failed_requests: int
    consecutive_failures: int
    average_response_time_ms: float
    health_status: HealthStatus
    last_used_at: datetime | None
    last_health_check_at: datetime | None
    disabled_until: datetime | None


@dataclass(slots=True)
class MappingHealth:
    """In-memory health record, used where no persisted mapping exists yet."""

    weight: int = 1
    is_enabled: bool = True
    current_connections: int = 0
    total_usage_count: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    average_response_time_ms: float = 0.0
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_used_at: datetime | None = None
    last_health_check_at: datetime | None = None
    disabled_until: datetime | None = None


def record_success(mapping: HealthTracked, response_time_ms: float, *, now: datetime | None = None) -> None:
    mapping.total_usage_count += 1
    mapping.successful_requests += 1
    mapping.consecutive_failures = 0
    mapping.last_used_at = now if now is not None else utcnow()
    sample = max(0.0, float(response_time_ms))
    if mapping.average_response_time_ms == 0:
        mapping.average_response_time_ms = sample
    else:
        mapping.average_response_time_ms = (
            mapping.average_response_time_ms * (1 - RESPONSE_TIME_EMA_ALPHA) + sample * RESPONSE_TIME_EMA_ALPHA
        )


def record_failure(mapping: HealthTracked, *, now: datetime | None = None) -> None:
    # Observing a failure never quarantines on its own; see mark_unhealthy.
    mapping.total_usage_count += 1
    mapping.failed_requests += 1
    mapping.consecutive_failures += 1
    mapping.last_used_at = now if now is not None else utcnow()


def mark_unhealthy(
    mapping: HealthTracked,
    disable_seconds: int = DEFAULT_DISABLE_SECONDS,
    *,
    now: datetime | None = None,
) -> None:
    current = now if now is not None else utcnow()
    mapping.health_status = HealthStatus.UNHEALTHY
    mapping.disabled_until = current + timedelta(seconds=disable_seconds)
    mapping.last_health_check_at = current


def mark_healthy(mapping: HealthTracked, *, now: datetime | None = None) -> None:
    mapping.health_status = HealthStatus.HEALTHY
    mapping.consecutive_failures = 0
    mapping.disabled_until = None
    mapping.last_health_check_at = now if now is not None else utcnow()


def reset_health(mapping: HealthTracked, *, now: datetime | None = None) -> None:
    mapping.health_status = HealthStatus.UNKNOWN
    mapping.consecutive_failures = 0
    mapping.disabled_until = None
    mapping.last_health_check_at = now if now is not None else utcnow()


def success_rate(mapping: HealthTracked) -> float:
    if mapping.total_usage_count <= 0:
        return 0.0
    return mapping.successful_requests / mapping.total_usage_count


def weight_score(mapping: HealthTracked) -> float:
    success_rate_factor = 0.5 + success_rate(mapping) * 0.5
    failure_penalty = max(0.1, 1.0 - 0.1 * mapping.consecutive_failures)
    response_time_factor = max(0.1, 1.0 - mapping.average_response_time_ms / RESPONSE_TIME_CEILING_MS)
    score = mapping.weight * success_rate_factor * failure_penalty * response_time_factor
    return max(MIN_WEIGHT_SCORE, score)


def mapping_ineligibility_reason(
    mapping: HealthTracked | None,
    *,
    owner_valid: bool = True,
    account_usable: bool = True,
    now: datetime | None = None,
) -> str | None:
    if mapping is None:
        return "missing"
    if not mapping.is_enabled:
        return "disabled"
    if not owner_valid:
        return "owner_invalid"
    if not account_usable:
        return "account_unusable"
    current = now if now is not None else utcnow()
    if mapping.disabled_until is not None and current < mapping.disabled_until:
        return "quarantined"
    if mapping.health_status == HealthStatus.UNHEALTHY:
        return "unhealthy"
    return None


def is_mapping_available(
    mapping: HealthTracked | None,
    *,
    owner_valid: bool = True,
    account_usable: bool = True,
    now: datetime | None = None,
) -> bool:
    return (
        mapping_ineligibility_reason(
            mapping,
            owner_valid=owner_valid,
            account_usable=account_usable,
            now=now,
        )
        is None
    )


def apply_probe_result(mapping: HealthTracked, *, healthy: bool, now: datetime | None = None) -> None:
    """Fold an out-of-band health probe into the mapping.

    A passing probe clears quarantine. A failing probe flags the mapping unhealthy but keeps
    whatever ``disabled_until`` window is already in place.
    """
    current = now if now is not None else utcnow()
    if healthy:
        mark_healthy(mapping, now=current)
        return
    mapping.health_status = HealthStatus.UNHEALTHY
    mapping.last_health_check_at = current


def probe_passes(mapping: HealthTracked, *, account_usable: bool, now: datetime | None = None) -> bool:
    if not mapping.is_enabled or not account_usable:
        return False
    current = now if now is not None else utcnow()
    return mapping.disabled_until is None or current >= mapping.disabled_until
