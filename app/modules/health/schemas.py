from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.db.models import HealthStatus
from app.modules.health.service import MappingHealthData
from app.modules.shared.schemas import DashboardModel


class MappingHealthResponse(DashboardModel):
    api_key_id: str
    account_id: str
    weight: int
    is_enabled: bool
    current_connections: int
    total_usage_count: int
    successful_requests: int
    failed_requests: int
    consecutive_failures: int
    average_response_time_ms: float
    health_status: HealthStatus
    last_used_at: datetime | None = None
    last_health_check_at: datetime | None = None
    disabled_until: datetime | None = None
    success_rate: float
    weight_score: float
    is_available: bool

    @classmethod
    def from_data(cls, data: MappingHealthData) -> MappingHealthResponse:
        return cls(
            api_key_id=data.api_key_id,
            account_id=data.account_id,
            weight=data.weight,
            is_enabled=data.is_enabled,
            current_connections=data.current_connections,
            total_usage_count=data.total_usage_count,
            successful_requests=data.successful_requests,
            failed_requests=data.failed_requests,
            consecutive_failures=data.consecutive_failures,
            average_response_time_ms=data.average_response_time_ms,
            health_status=data.health_status,
            last_used_at=data.last_used_at,
            last_health_check_at=data.last_health_check_at,
            disabled_until=data.disabled_until,
            success_rate=data.success_rate,
            weight_score=data.weight_score,
            is_available=data.is_available,
        )


class MappingHealthListResponse(DashboardModel):
    mappings: list[MappingHealthResponse] = Field(default_factory=list)


class RecordSuccessRequest(DashboardModel):
    response_time_ms: float = Field(ge=0)


class MarkUnhealthyRequest(DashboardModel):
    disable_seconds: int | None = Field(default=None, ge=0)


class HealthCheckResponse(DashboardModel):
    results: dict[str, bool] = Field(default_factory=dict)
