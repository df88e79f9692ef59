from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from app.core.balancer.health import RESPONSE_TIME_EMA_ALPHA, HealthTracked
from app.core.utils.time import utcnow
from app.db.models import HealthStatus


class GroupLike(Protocol):
    is_enabled: bool
    health_status: HealthStatus
    account_count: int
    request_limit: int | None
    cost_limit: float | None


class StatisticsLike(Protocol):
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_cost: float
    average_response_time_ms: float
    current_connections: int
    peak_connections: int
    last_used_at: datetime | None
    started_at: datetime


@dataclass(frozen=True, slots=True)
class GroupUsageInfo:
    request_usage: float
    cost_usage: float
    total_requests: int
    total_cost: float
    success_rate: float
    average_response_time_ms: float
    healthy_account_count: int
    last_used_at: datetime | None


@dataclass(frozen=True, slots=True)
class StatisticsSummary:
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    failure_rate: float
    total_cost: float
    average_response_time_ms: float
    current_connections: int
    peak_connections: int
    uptime_seconds: float
    last_used_at: datetime | None


def stats_success_rate(stats: StatisticsLike | None) -> float:
    if stats is None or stats.total_requests <= 0:
        return 0.0
    return stats.successful_requests / stats.total_requests


def stats_failure_rate(stats: StatisticsLike | None) -> float:
    if stats is None or stats.total_requests <= 0:
        return 0.0
    return stats.failed_requests / stats.total_requests


def can_accept_request(group: GroupLike, stats: StatisticsLike | None) -> bool:
    if not group.is_enabled:
        return False
    if group.health_status != HealthStatus.HEALTHY:
        return False
    if group.account_count <= 0:
        return False
    total_requests = stats.total_requests if stats is not None else 0
    total_cost = stats.total_cost if stats is not None else 0.0
    if group.request_limit is not None and total_requests >= group.request_limit:
        return False
    if group.cost_limit is not None and total_cost >= group.cost_limit:
        return False
    return True


def usage_info(
    group: GroupLike,
    stats: StatisticsLike | None,
    *,
    healthy_account_count: int = 0,
) -> GroupUsageInfo:
    total_requests = stats.total_requests if stats is not None else 0
    total_cost = stats.total_cost if stats is not None else 0.0
    request_usage = total_requests / group.request_limit if group.request_limit else 0.0
    cost_usage = total_cost / group.cost_limit if group.cost_limit else 0.0
    return GroupUsageInfo(
        request_usage=request_usage,
        cost_usage=cost_usage,
        total_requests=total_requests,
        total_cost=total_cost,
        success_rate=stats_success_rate(stats),
        average_response_time_ms=stats.average_response_time_ms if stats is not None else 0.0,
        healthy_account_count=healthy_account_count,
        last_used_at=stats.last_used_at if stats is not None else None,
    )


def record_request(
    stats: StatisticsLike,
    *,
    success: bool,
    cost: float = 0.0,
    response_time_ms: float = 0.0,
    now: datetime | None = None,
) -> None:
    stats.total_requests += 1
    if success:
        stats.successful_requests += 1
    else:
        stats.failed_requests += 1
    stats.total_cost += max(0.0, float(cost))
    sample = max(0.0, float(response_time_ms))
    if stats.average_response_time_ms == 0:
        stats.average_response_time_ms = sample
    else:
        stats.average_response_time_ms = (
            stats.average_response_time_ms * (1 - RESPONSE_TIME_EMA_ALPHA) + sample * RESPONSE_TIME_EMA_ALPHA
        )
    stats.last_used_at = now if now is not None else utcnow()


def track_connection(stats: StatisticsLike, delta: int) -> None:
    stats.current_connections = max(0, stats.current_connections + delta)
    stats.peak_connections = max(stats.peak_connections, stats.current_connections)


def reset_statistics(stats: StatisticsLike, *, now: datetime | None = None) -> None:
    stats.total_requests = 0
    stats.successful_requests = 0
    stats.failed_requests = 0
    stats.total_cost = 0.0
    stats.average_response_time_ms = 0.0
    stats.current_connections = 0
    stats.peak_connections = 0
    stats.last_used_at = None
    stats.started_at = now if now is not None else utcnow()


def statistics_summary(stats: StatisticsLike, *, now: datetime | None = None) -> StatisticsSummary:
    current = now if now is not None else utcnow()
    return StatisticsSummary(
        total_requests=stats.total_requests,
        successful_requests=stats.successful_requests,
        failed_requests=stats.failed_requests,
        success_rate=stats_success_rate(stats),
        failure_rate=stats_failure_rate(stats),
        total_cost=stats.total_cost,
        average_response_time_ms=stats.average_response_time_ms,
        current_connections=stats.current_connections,
        peak_connections=stats.peak_connections,
        uptime_seconds=max(0.0, (current - stats.started_at).total_seconds()),
        last_used_at=stats.last_used_at,
    )


def aggregate_statistics(stats: StatisticsLike, mappings: Iterable[HealthTracked]) -> None:
    """Rebuild request counters from the group's mappings."""
    items = list(mappings)
    stats.total_requests = sum(mapping.total_usage_count for mapping in items)
    stats.successful_requests = sum(mapping.successful_requests for mapping in items)
    stats.failed_requests = sum(mapping.failed_requests for mapping in items)
    stats.current_connections = sum(mapping.current_connections for mapping in items)
    stats.peak_connections = max(stats.peak_connections, stats.current_connections)
    sampled = [mapping.average_response_time_ms for mapping in items if mapping.average_response_time_ms > 0]
    stats.average_response_time_ms = sum(sampled) / len(sampled) if sampled else 0.0
    used = [mapping.last_used_at for mapping in items if mapping.last_used_at is not None]
    stats.last_used_at = max(used) if used else stats.last_used_at
