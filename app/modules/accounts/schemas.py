from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.db.models import Account, AccountStatus
from app.modules.shared.schemas import DashboardModel


class AccountSummary(DashboardModel):
    id: str
    name: str
    platform: str
    pool_group: str | None = None
    priority: int
    weight: int
    is_enabled: bool
    status: AccountStatus
    rate_limited_until: datetime | None = None
    usage_count: int
    last_used_at: datetime | None = None

    @classmethod
    def from_account(cls, account: Account) -> AccountSummary:
        return cls(
            id=account.id,
            name=account.name,
            platform=account.platform,
            pool_group=account.pool_group,
            priority=account.priority,
            weight=account.weight,
            is_enabled=account.is_enabled,
            status=account.status,
            rate_limited_until=account.rate_limited_until,
            usage_count=account.usage_count,
            last_used_at=account.last_used_at,
        )


class AccountsResponse(DashboardModel):
    accounts: list[AccountSummary] = Field(default_factory=list)


class AccountUpsertRequest(DashboardModel):
    name: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    pool_group: str | None = None
    priority: int = Field(default=50, ge=0)
    weight: int = Field(default=1, ge=1)
    is_enabled: bool = True
    status: AccountStatus = AccountStatus.ACTIVE
    rate_limited_until: datetime | None = None


class ApiKeySummary(DashboardModel):
    id: str
    name: str
    is_enabled: bool
    expires_at: datetime | None = None
    created_at: datetime | None = None


class ApiKeysResponse(DashboardModel):
    keys: list[ApiKeySummary] = Field(default_factory=list)


class ApiKeyUpsertRequest(DashboardModel):
    name: str = Field(min_length=1)
    is_enabled: bool = True
    expires_at: datetime | None = None


class DeleteResponse(DashboardModel):
    status: str


class AccountStatusRequest(DashboardModel):
    status: AccountStatus
    rate_limited_until: datetime | None = None
