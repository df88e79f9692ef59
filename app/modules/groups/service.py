from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from app.core.balancer.eligibility import is_account_usable
from app.core.balancer.groups import (
    GroupUsageInfo,
    StatisticsSummary,
    can_accept_request,
    statistics_summary,
    usage_info,
)
from app.core.balancer.health import is_mapping_available, success_rate, weight_score
from app.core.exceptions import (
    AccountNotFoundError,
    DuplicateGroupError,
    DuplicateGroupMappingError,
    GroupNotFoundError,
    InvalidGroupError,
    MappingNotFoundError,
    ProtectedGroupError,
)
from app.core.utils.time import utcnow
from app.db.models import (
    Account,
    AccountGroup,
    FailoverStrategy,
    GroupAccountMapping,
    GroupType,
    HealthStatus,
    LoadBalanceStrategy,
)
from app.modules.accounts.repository import AccountsRepository
from app.modules.groups.repository import GroupsRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GroupInput:
    name: str
    description: str | None = None
    group_type: GroupType = GroupType.CUSTOM
    priority: int = 50
    is_enabled: bool = True
    cost_limit: float | None = None
    request_limit: int | None = None
    load_balance_strategy: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN
    failover_strategy: FailoverStrategy = FailoverStrategy.FAILOVER
    health_check_interval_seconds: int = 30


@dataclass(frozen=True, slots=True)
class GroupUpdate:
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


@dataclass(frozen=True, slots=True)
class GroupMappingInput:
    weight: int = 1
    order: int = 0
    is_primary: bool = False


@dataclass(frozen=True, slots=True)
class GroupMappingUpdate:
    weight: int | None = None
    order: int | None = None
    is_primary: bool | None = None
    is_enabled: bool | None = None


@dataclass(frozen=True, slots=True)
class GroupData:
    id: int
    name: str
    description: str | None
    group_type: GroupType
    priority: int
    is_enabled: bool
    cost_limit: float | None
    request_limit: int | None
    load_balance_strategy: LoadBalanceStrategy
    failover_strategy: FailoverStrategy
    health_check_interval_seconds: int
    account_count: int
    health_status: HealthStatus
    last_health_check_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True, slots=True)
class GroupMappingData:
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
    last_used_at: datetime | None
    last_health_check_at: datetime | None
    disabled_until: datetime | None
    success_rate: float
    weight_score: float
    is_available: bool


@dataclass(frozen=True, slots=True)
class GroupOverview:
    group: GroupData
    usage: GroupUsageInfo
    can_accept_requests: bool


def group_to_data(group: AccountGroup) -> GroupData:
    return GroupData(
        id=group.id,
        name=group.name,
        description=group.description,
        group_type=group.group_type,
        priority=group.priority,
        is_enabled=group.is_enabled,
        cost_limit=group.cost_limit,
        request_limit=group.request_limit,
        load_balance_strategy=group.load_balance_strategy,
        failover_strategy=group.failover_strategy,
        health_check_interval_seconds=group.health_check_interval_seconds,
        account_count=group.account_count,
        health_status=group.health_status,
        last_health_check_at=group.last_health_check_at,
        created_at=group.created_at,
        updated_at=group.updated_at,
    )


def group_mapping_available(
    group: AccountGroup,
    mapping: GroupAccountMapping,
    account: Account | None,
    *,
    now: datetime | None = None,
) -> bool:
    current = now if now is not None else utcnow()
    return is_mapping_available(
        mapping,
        owner_valid=group.is_enabled,
        account_usable=is_account_usable(account, now=current),
        now=current,
    )


def group_mapping_to_data(mapping: GroupAccountMapping, *, available: bool) -> GroupMappingData:
    return GroupMappingData(
        group_id=mapping.group_id,
        account_id=mapping.account_id,
        weight=mapping.weight,
        order=mapping.order,
        is_primary=mapping.is_primary,
        is_enabled=mapping.is_enabled,
        current_connections=mapping.current_connections,
        total_usage_count=mapping.total_usage_count,
        successful_requests=mapping.successful_requests,
        failed_requests=mapping.failed_requests,
        consecutive_failures=mapping.consecutive_failures,
        average_response_time_ms=mapping.average_response_time_ms,
        health_status=mapping.health_status,
        last_used_at=mapping.last_used_at,
        last_health_check_at=mapping.last_health_check_at,
        disabled_until=mapping.disabled_until,
        success_rate=success_rate(mapping),
        weight_score=weight_score(mapping),
        is_available=available,
    )


def _validate_limits(
    *,
    priority: int | None,
    cost_limit: float | None,
    request_limit: int | None,
    interval: int | None,
) -> None:
    if priority is not None and priority < 0:
        raise InvalidGroupError("Priority must not be negative", param="priority")
    if cost_limit is not None and cost_limit <= 0:
        raise InvalidGroupError("Cost limit must be positive", param="costLimit")
    if request_limit is not None and request_limit <= 0:
        raise InvalidGroupError("Request limit must be positive", param="requestLimit")
    if interval is not None and interval <= 0:
        raise InvalidGroupError("Health check interval must be positive", param="healthCheckIntervalSeconds")


def _validate_mapping(weight: int | None, order: int | None) -> None:
    if weight is not None and weight < 1:
        raise InvalidGroupError("Weight must be at least 1", param="weight")
    if order is not None and order < 0:
        raise InvalidGroupError("Order must not be negative", param="order")


class GroupsService:
    def __init__(self, repository: GroupsRepository, accounts: AccountsRepository) -> None:
        self._repository = repository
        self._accounts = accounts

    async def list_groups(self) -> list[GroupData]:
        return [group_to_data(group) for group in await self._repository.list_groups()]

    async def get_group(self, group_id: int) -> GroupData:
        return group_to_data(await self._require_group(group_id))

    async def create_group(self, payload: GroupInput) -> GroupData:
        name = (payload.name or "").strip()
        if not name:
            raise InvalidGroupError("Group name must not be empty", param="name")
        _validate_limits(
            priority=payload.priority,
            cost_limit=payload.cost_limit,
            request_limit=payload.request_limit,
            interval=payload.health_check_interval_seconds,
        )
        if await self._repository.get_by_name(name) is not None:
            raise DuplicateGroupError(f"Group '{name}' already exists")

        group = await self._repository.add(
            AccountGroup(
                name=name,
                description=payload.description,
                group_type=payload.group_type,
                priority=payload.priority,
                is_enabled=payload.is_enabled,
                cost_limit=payload.cost_limit,
                request_limit=payload.request_limit,
                load_balance_strategy=payload.load_balance_strategy,
                failover_strategy=payload.failover_strategy,
                health_check_interval_seconds=payload.health_check_interval_seconds,
                account_count=0,
                health_status=HealthStatus.UNKNOWN,
                round_robin_index=0,
            )
        )
        logger.info("group_created id=%s name=%s strategy=%s", group.id, group.name, group.load_balance_strategy.value)
        return group_to_data(group)

    async def update_group(self, group_id: int, payload: GroupUpdate) -> GroupData:
        group = await self._require_group(group_id)
        _validate_limits(
            priority=payload.priority,
            cost_limit=payload.cost_limit,
            request_limit=payload.request_limit,
            interval=payload.health_check_interval_seconds,
        )
        if payload.name is not None:
            name = payload.name.strip()
            if not name:
                raise InvalidGroupError("Group name must not be empty", param="name")
            existing = await self._repository.get_by_name(name)
            if existing is not None and existing.id != group.id:
                raise DuplicateGroupError(f"Group '{name}' already exists")
            group.name = name
        if payload.description is not None:
            group.description = payload.description
        if payload.priority is not None:
            group.priority = payload.priority
        if payload.is_enabled is not None:
            group.is_enabled = payload.is_enabled
        if payload.clear_cost_limit:
            group.cost_limit = None
        elif payload.cost_limit is not None:
            group.cost_limit = payload.cost_limit
        if payload.clear_request_limit:
            group.request_limit = None
        elif payload.request_limit is not None:
            group.request_limit = payload.request_limit
        if payload.load_balance_strategy is not None:
            group.load_balance_strategy = payload.load_balance_strategy
        if payload.failover_strategy is not None:
            group.failover_strategy = payload.failover_strategy
        if payload.health_check_interval_seconds is not None:
            group.health_check_interval_seconds = payload.health_check_interval_seconds
        await self._repository.save(group)
        return group_to_data(group)

    async def delete_group(self, group_id: int) -> None:
        group = await self._require_group(group_id)
        if group.group_type == GroupType.SYSTEM:
            raise ProtectedGroupError(f"System group '{group.name}' cannot be deleted")
        await self._repository.delete(group_id)
        logger.info("group_deleted id=%s name=%s", group_id, group.name)

    async def toggle_group(self, group_id: int) -> GroupData:
        group = await self._require_group(group_id)
        group.is_enabled = not group.is_enabled
        await self._repository.save(group)
        logger.info("group_toggled id=%s enabled=%s", group_id, group.is_enabled)
        return group_to_data(group)

    async def list_accounts(self, group_id: int) -> list[GroupMappingData]:
        group = await self._require_group(group_id)
        mappings = await self._repository.list_mappings(group_id)
        accounts = await self._accounts.get_accounts([mapping.account_id for mapping in mappings])
        now = utcnow()
        return [
            group_mapping_to_data(
                mapping,
                available=group_mapping_available(group, mapping, accounts.get(mapping.account_id), now=now),
            )
            for mapping in mappings
        ]

    async def add_account(self, group_id: int, account_id: str, payload: GroupMappingInput) -> GroupMappingData:
        group = await self._require_group(group_id)
        account = await self._accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account '{account_id}' not found")
        _validate_mapping(payload.weight, payload.order)
        if await self._repository.get_mapping(group_id, account_id) is not None:
            raise DuplicateGroupMappingError(f"Account '{account_id}' is already in group '{group.name}'")

        mapping = await self._repository.add_mapping(
            group_id,
            account_id,
            weight=payload.weight,
            order=payload.order,
            is_primary=payload.is_primary,
        )
        logger.info("group_account_added group=%s account=%s primary=%s", group_id, account_id, payload.is_primary)
        return group_mapping_to_data(mapping, available=group_mapping_available(group, mapping, account))

    async def update_account(
        self,
        group_id: int,
        account_id: str,
        payload: GroupMappingUpdate,
    ) -> GroupMappingData:
        group = await self._require_group(group_id)
        mapping = await self._repository.get_mapping(group_id, account_id)
        if mapping is None:
            raise MappingNotFoundError(f"Account '{account_id}' is not in group '{group.name}'")
        _validate_mapping(payload.weight, payload.order)
        mapping = await self._repository.update_mapping(
            mapping,
            weight=payload.weight,
            order=payload.order,
            is_primary=payload.is_primary,
            is_enabled=payload.is_enabled,
        )
        account = await self._accounts.get_account(account_id)
        return group_mapping_to_data(mapping, available=group_mapping_available(group, mapping, account))

    async def remove_account(self, group_id: int, account_id: str) -> None:
        group = await self._require_group(group_id)
        if not await self._repository.delete_mapping(group_id, account_id):
            raise MappingNotFoundError(f"Account '{account_id}' is not in group '{group.name}'")
        logger.info("group_account_removed group=%s account=%s", group_id, account_id)

    async def get_statistics(self, group_id: int) -> StatisticsSummary:
        await self._require_group(group_id)
        return statistics_summary(await self._repository.get_statistics(group_id))

    async def get_usage_info(self, group_id: int) -> GroupUsageInfo:
        group = await self._require_group(group_id)
        stats = await self._repository.get_statistics(group_id)
        return usage_info(group, stats, healthy_account_count=await self._healthy_count(group))

    async def overview(self) -> list[GroupOverview]:
        results: list[GroupOverview] = []
        for group in await self._repository.list_groups():
            stats = await self._repository.get_statistics(group.id)
            results.append(
                GroupOverview(
                    group=group_to_data(group),
                    usage=usage_info(group, stats, healthy_account_count=await self._healthy_count(group)),
                    can_accept_requests=can_accept_request(group, stats),
                )
            )
        return results

    async def _healthy_count(self, group: AccountGroup) -> int:
        mappings = await self._repository.list_mappings(group.id)
        accounts = await self._accounts.get_accounts([mapping.account_id for mapping in mappings])
        now = utcnow()
        return sum(
            1 for mapping in mappings if group_mapping_available(group, mapping, accounts.get(mapping.account_id), now=now)
        )

    async def _require_group(self, group_id: int) -> AccountGroup:
        group = await self._repository.get(group_id)
        if group is None:
            raise GroupNotFoundError(f"Group '{group_id}' not found")
        return group
