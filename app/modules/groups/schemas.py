from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from pydantic import Field

from app.core.balancer.groups import GroupUsageInfo, StatisticsSummary
from app.db.models import FailoverStrategy, GroupType, HealthStatus, LoadBalanceStrategy
from app.modules.groups.balancer import GroupSelection
from app.modules.groups.service import GroupData, GroupMappingData, GroupOverview
from app.modules.shared.schemas import DashboardModel


class GroupCreateRequest(DashboardModel):
    name: str = Field(min_length=1)
    description: str | None = None
    group_type: GroupType = GroupType.CUSTOM
    priority: int = 50
    is_enabled: bool = True
    cost_limit: float | None = None
    request_limit: int | None = None
    load_balance_strategy: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN
    failover_strategy: FailoverStrategy = FailoverStrategy.FAILOVER
    health_check_interval_seconds: int = 30


class GroupUpdateRequest(DashboardModel):
    name: str | None = None
    description: str | None = None
    priority: int | None = None
    is_enabled: bool | None = None
    cost_limit: float | None = None
    request_limit: int | None = None
    load_balance_strategy: LoadBalanceStrategy | None = None
    failover_strategy: FailoverStrategy | None = None
    health_check_interval_seconds: int | None = None
    clear_cost_limit: bool = False
    clear_request_limit: bool = False


class GroupResponse(DashboardModel):
    id: int
    name: str
    description: str | None = None
    group_type: GroupType
    priority: int
    is_enabled: bool
    cost_limit: float | None = None
    request_limit: int | None = None
    load_balance_strategy: LoadBalanceStrategy
    failover_strategy: FailoverStrategy
    health_check_interval_seconds: int
    account_count: int
    health_status: HealthStatus
    last_health_check_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_data(cls, data: GroupData) -> GroupResponse:
        return cls.model_validate(asdict(data))


class GroupsResponse(DashboardModel):
    groups: list[GroupResponse] = Field(default_factory=list)


class GroupAccountRequest(DashboardModel):
    weight: int = 1
    order: int = 0
    is_primary: bool = False


class GroupAccountUpdateRequest(DashboardModel):
    weight: int | None = None
    order: int | None = None
    is_primary: bool | None = None
    is_enabled: bool | None = None


class GroupAccountResponse(DashboardModel):
    group_id: int
    account_id: str
    weight: int
    order: int
    is_primary: bool
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
    def from_data(cls, data: GroupMappingData) -> GroupAccountResponse:
        return cls.model_validate(asdict(data))


class GroupAccountsResponse(DashboardModel):
    accounts: list[GroupAccountResponse] = Field(default_factory=list)


class GroupSelectionResponse(DashboardModel):
    group_id: int
    account_id: str
    strategy: str
    mapping: GroupAccountResponse

    @classmethod
    def from_selection(cls, selection: GroupSelection) -> GroupSelectionResponse:
        return cls.model_validate(asdict(selection))


class GroupSelectResponse(DashboardModel):
    selection: GroupSelectionResponse | None = None


class GroupUsageRequest(DashboardModel):
    account_id: str = Field(min_length=1)
    success: bool
    cost: float = Field(default=0.0, ge=0)
    response_time_ms: float = Field(default=0.0, ge=0)


class GroupFailoverRequest(DashboardModel):
    failed_account_id: str = Field(min_length=1)


class GroupStatisticsResponse(DashboardModel):
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
    last_used_at: datetime | None = None

    @classmethod
    def from_summary(cls, summary: StatisticsSummary) -> GroupStatisticsResponse:
        return cls.model_validate(asdict(summary))


class GroupUsageInfoResponse(DashboardModel):
    request_usage: float
    cost_usage: float
    total_requests: int
    total_cost: float
    success_rate: float
    average_response_time_ms: float
    healthy_account_count: int
    last_used_at: datetime | None = None

    @classmethod
    def from_info(cls, info: GroupUsageInfo) -> GroupUsageInfoResponse:
        return cls.model_validate(asdict(info))


class GroupOverviewEntry(DashboardModel):
    group: GroupResponse
    usage: GroupUsageInfoResponse
    can_accept_requests: bool

    @classmethod
    def from_overview(cls, overview: GroupOverview) -> GroupOverviewEntry:
        return cls(
            group=GroupResponse.from_data(overview.group),
            usage=GroupUsageInfoResponse.from_info(overview.usage),
            can_accept_requests=overview.can_accept_requests,
        )


class GroupOverviewResponse(DashboardModel):
    groups: list[GroupOverviewEntry] = Field(default_factory=list)


class GroupHealthResponse(DashboardModel):
    healthy: bool


class GroupAccountsHealthResponse(DashboardModel):
    accounts: dict[str, bool] = Field(default_factory=dict)


class GroupsHealthResponse(DashboardModel):
    results: dict[int, bool] = Field(default_factory=dict)
