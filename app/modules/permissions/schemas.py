from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.modules.accounts.schemas import AccountSummary
from app.modules.permissions.service import PermissionRuleData
from app.modules.shared.schemas import DashboardModel


class PermissionRuleRequest(DashboardModel):
    pool_group: str
    allowed_platforms: list[str] = Field(default_factory=list)
    allowed_account_ids: list[str] | None = None
    selection_strategy: str = "priority"
    priority: int = 50
    is_enabled: bool = True
    effective_from: datetime | None = None
    effective_to: datetime | None = None


class PermissionRuleResponse(DashboardModel):
    id: int
    api_key_id: str
    pool_group: str
    allowed_platforms: list[str]
    allowed_account_ids: list[str] | None = None
    selection_strategy: str
    priority: int
    is_enabled: bool
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_data(cls, data: PermissionRuleData) -> PermissionRuleResponse:
        return cls(
            id=data.id,
            api_key_id=data.api_key_id,
            pool_group=data.pool_group,
            allowed_platforms=data.allowed_platforms,
            allowed_account_ids=data.allowed_account_ids,
            selection_strategy=data.selection_strategy.value,
            priority=data.priority,
            is_enabled=data.is_enabled,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
            created_at=data.created_at,
            updated_at=data.updated_at,
            warnings=data.warnings,
        )


class PermissionsResponse(DashboardModel):
    permissions: list[PermissionRuleResponse] = Field(default_factory=list)


class PermissionsReplaceRequest(DashboardModel):
    permissions: list[PermissionRuleRequest] = Field(default_factory=list)


class PermissionRemoveResponse(DashboardModel):
    status: str


class AllowedAccountsResponse(DashboardModel):
    accounts: list[AccountSummary] = Field(default_factory=list)


class HasPermissionResponse(DashboardModel):
    allowed: bool


class SelectAccountRequest(DashboardModel):
    platform: str = Field(min_length=1)
    session_key: str | None = None


class SelectAccountResponse(DashboardModel):
    account: AccountSummary | None = None
