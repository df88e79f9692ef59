from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from app.dependencies import GroupsContext, get_groups_context
from app.modules.accounts.schemas import DeleteResponse
from app.modules.groups.schemas import (
    GroupAccountRequest,
    GroupAccountResponse,
    GroupAccountsHealthResponse,
    GroupAccountsResponse,
    GroupAccountUpdateRequest,
    GroupCreateRequest,
    GroupFailoverRequest,
    GroupHealthResponse,
    GroupOverviewEntry,
    GroupOverviewResponse,
    GroupResponse,
    GroupSelectionResponse,
    GroupSelectResponse,
    GroupsHealthResponse,
    GroupsResponse,
    GroupStatisticsResponse,
    GroupUpdateRequest,
    GroupUsageInfoResponse,
    GroupUsageRequest,
)
from app.modules.groups.service import GroupInput, GroupMappingInput, GroupMappingUpdate, GroupUpdate

router = APIRouter(prefix="/api/groups", tags=["groups"])


@router.get("", response_model=GroupsResponse)
async def list_groups(
    context: GroupsContext = Depends(get_groups_context),
) -> GroupsResponse:
    groups = await context.service.list_groups()
    return GroupsResponse(groups=[GroupResponse.from_data(group) for group in groups])


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(
    payload: GroupCreateRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupResponse:
    group = await context.service.create_group(
        GroupInput(
            name=payload.name,
            description=payload.description,
            group_type=payload.group_type,
            priority=payload.priority,
            is_enabled=payload.is_enabled,
            cost_limit=payload.cost_limit,
            request_limit=payload.request_limit,
            load_balance_strategy=payload.load_balance_strategy,
            failover_strategy=payload.failover_strategy,
            health_check_interval_seconds=payload.health_check_interval_seconds,
        )
    )
    return GroupResponse.from_data(group)


@router.get("/overview", response_model=GroupOverviewResponse)
async def groups_overview(
    context: GroupsContext = Depends(get_groups_context),
) -> GroupOverviewResponse:
    entries = await context.service.overview()
    return GroupOverviewResponse(groups=[GroupOverviewEntry.from_overview(entry) for entry in entries])


@router.post("/health-check", response_model=GroupsHealthResponse)
async def check_all_groups(
    context: GroupsContext = Depends(get_groups_context),
) -> GroupsHealthResponse:
    return GroupsHealthResponse(results=await context.balancer.check_all_groups())


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupResponse:
    return GroupResponse.from_data(await context.service.get_group(group_id))


@router.patch("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: int,
    payload: GroupUpdateRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupResponse:
    group = await context.service.update_group(
        group_id,
        GroupUpdate(
            name=payload.name,
            description=payload.description,
            priority=payload.priority,
            is_enabled=payload.is_enabled,
            cost_limit=payload.cost_limit,
            request_limit=payload.request_limit,
            load_balance_strategy=payload.load_balance_strategy,
            failover_strategy=payload.failover_strategy,
            health_check_interval_seconds=payload.health_check_interval_seconds,
            clear_cost_limit=payload.clear_cost_limit,
            clear_request_limit=payload.clear_request_limit,
        ),
    )
    return GroupResponse.from_data(group)


@router.delete("/{group_id}", response_model=DeleteResponse)
async def delete_group(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> DeleteResponse:
    await context.service.delete_group(group_id)
    return DeleteResponse(status="deleted")


@router.post("/{group_id}/toggle", response_model=GroupResponse)
async def toggle_group(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupResponse:
    return GroupResponse.from_data(await context.service.toggle_group(group_id))


@router.get("/{group_id}/accounts", response_model=GroupAccountsResponse)
async def list_group_accounts(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountsResponse:
    mappings = await context.service.list_accounts(group_id)
    return GroupAccountsResponse(accounts=[GroupAccountResponse.from_data(mapping) for mapping in mappings])


@router.put("/{group_id}/accounts/{account_id}", response_model=GroupAccountResponse, status_code=201)
async def add_group_account(
    group_id: int,
    account_id: str,
    payload: GroupAccountRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountResponse:
    mapping = await context.service.add_account(
        group_id,
        account_id,
        GroupMappingInput(weight=payload.weight, order=payload.order, is_primary=payload.is_primary),
    )
    return GroupAccountResponse.from_data(mapping)


@router.patch("/{group_id}/accounts/{account_id}", response_model=GroupAccountResponse)
async def update_group_account(
    group_id: int,
    account_id: str,
    payload: GroupAccountUpdateRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountResponse:
    mapping = await context.service.update_account(
        group_id,
        account_id,
        GroupMappingUpdate(
            weight=payload.weight,
            order=payload.order,
            is_primary=payload.is_primary,
            is_enabled=payload.is_enabled,
        ),
    )
    return GroupAccountResponse.from_data(mapping)


@router.delete("/{group_id}/accounts/{account_id}", response_model=DeleteResponse)
async def remove_group_account(
    group_id: int,
    account_id: str,
    context: GroupsContext = Depends(get_groups_context),
) -> DeleteResponse:
    await context.service.remove_account(group_id, account_id)
    return DeleteResponse(status="deleted")


@router.post("/{group_id}/accounts/{account_id}/failure", response_model=GroupAccountResponse)
async def handle_group_account_failure(
    group_id: int,
    account_id: str,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountResponse:
    return GroupAccountResponse.from_data(await context.balancer.handle_failure(group_id, account_id))


@router.post("/{group_id}/accounts/{account_id}/recover", response_model=GroupAccountResponse)
async def recover_group_account(
    group_id: int,
    account_id: str,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountResponse:
    return GroupAccountResponse.from_data(await context.balancer.recover(group_id, account_id))


@router.post("/{group_id}/select", response_model=GroupSelectResponse)
async def select_group_account(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupSelectResponse:
    selection = await context.balancer.select_account(group_id)
    return GroupSelectResponse(
        selection=GroupSelectionResponse.from_selection(selection) if selection is not None else None
    )


@router.post("/{group_id}/usage", response_model=GroupAccountResponse)
async def record_group_usage(
    group_id: int,
    payload: GroupUsageRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountResponse:
    mapping = await context.balancer.record_usage(
        group_id,
        payload.account_id,
        success=payload.success,
        cost=payload.cost,
        response_time_ms=payload.response_time_ms,
    )
    return GroupAccountResponse.from_data(mapping)


@router.post("/{group_id}/failover", response_model=GroupSelectResponse)
async def failover_group(
    group_id: int,
    payload: GroupFailoverRequest = Body(...),
    context: GroupsContext = Depends(get_groups_context),
) -> GroupSelectResponse:
    selection = await context.balancer.perform_failover(group_id, payload.failed_account_id)
    return GroupSelectResponse(
        selection=GroupSelectionResponse.from_selection(selection) if selection is not None else None
    )


@router.get("/{group_id}/usage-info", response_model=GroupUsageInfoResponse)
async def get_group_usage_info(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupUsageInfoResponse:
    return GroupUsageInfoResponse.from_info(await context.balancer.get_usage_info(group_id))


@router.get("/{group_id}/statistics", response_model=GroupStatisticsResponse)
async def get_group_statistics(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupStatisticsResponse:
    return GroupStatisticsResponse.from_summary(await context.service.get_statistics(group_id))


@router.post("/{group_id}/statistics/refresh", response_model=GroupStatisticsResponse)
async def refresh_group_statistics(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupStatisticsResponse:
    return GroupStatisticsResponse.from_summary(await context.balancer.refresh_statistics(group_id))


@router.post("/{group_id}/statistics/reset", response_model=GroupStatisticsResponse)
async def reset_group_statistics(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupStatisticsResponse:
    return GroupStatisticsResponse.from_summary(await context.balancer.reset_statistics(group_id))


@router.post("/{group_id}/health-check", response_model=GroupHealthResponse)
async def check_group_health(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupHealthResponse:
    return GroupHealthResponse(healthy=await context.balancer.check_group_health(group_id))


@router.post("/{group_id}/accounts/health-check", response_model=GroupAccountsHealthResponse)
async def check_group_accounts_health(
    group_id: int,
    context: GroupsContext = Depends(get_groups_context),
) -> GroupAccountsHealthResponse:
    return GroupAccountsHealthResponse(accounts=await context.balancer.check_accounts_health(group_id))
