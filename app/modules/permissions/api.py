from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from app.core.errors import dashboard_error
from app.dependencies import (
    PermissionsContext,
    SelectionContext,
    get_permissions_context,
    get_selection_context,
)
from app.modules.accounts.schemas import AccountSummary
from app.modules.permissions.schemas import (
    AllowedAccountsResponse,
    HasPermissionResponse,
    PermissionRemoveResponse,
    PermissionRuleRequest,
    PermissionRuleResponse,
    PermissionsReplaceRequest,
    PermissionsResponse,
    SelectAccountRequest,
    SelectAccountResponse,
)
from app.modules.permissions.service import PermissionRuleInput

router = APIRouter(prefix="/api/keys/{key_id}", tags=["permissions"])


def _rule_input(payload: PermissionRuleRequest) -> PermissionRuleInput:
    return PermissionRuleInput(
        pool_group=payload.pool_group,
        allowed_platforms=payload.allowed_platforms,
        allowed_account_ids=payload.allowed_account_ids,
        selection_strategy=payload.selection_strategy,
        priority=payload.priority,
        is_enabled=payload.is_enabled,
        effective_from=payload.effective_from,
        effective_to=payload.effective_to,
    )


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(
    key_id: str,
    context: PermissionsContext = Depends(get_permissions_context),
) -> PermissionsResponse:
    rules = await context.service.get_permissions(key_id)
    return PermissionsResponse(permissions=[PermissionRuleResponse.from_data(rule) for rule in rules])


@router.post("/permissions", response_model=PermissionRuleResponse, status_code=201)
async def add_permission(
    key_id: str,
    payload: PermissionRuleRequest = Body(...),
    context: PermissionsContext = Depends(get_permissions_context),
) -> PermissionRuleResponse:
    rule = await context.service.add_permission(key_id, _rule_input(payload))
    return PermissionRuleResponse.from_data(rule)


@router.put("/permissions", response_model=PermissionsResponse)
async def replace_permissions(
    key_id: str,
    payload: PermissionsReplaceRequest = Body(...),
    context: PermissionsContext = Depends(get_permissions_context),
) -> PermissionsResponse:
    rules = await context.service.batch_replace_permissions(
        key_id,
        [_rule_input(entry) for entry in payload.permissions],
    )
    return PermissionsResponse(permissions=[PermissionRuleResponse.from_data(rule) for rule in rules])


@router.delete("/permissions/{pool_group}", response_model=PermissionRemoveResponse)
async def remove_permission(
    key_id: str,
    pool_group: str,
    context: PermissionsContext = Depends(get_permissions_context),
) -> PermissionRemoveResponse | JSONResponse:
    if not await context.service.remove_permission(key_id, pool_group):
        return JSONResponse(
            status_code=404,
            content=dashboard_error("permission_not_found", f"No permission for pool group '{pool_group}'"),
        )
    return PermissionRemoveResponse(status="deleted")


@router.get("/allowed-accounts", response_model=AllowedAccountsResponse)
async def get_allowed_accounts(
    key_id: str,
    platform: str = Query(..., min_length=1),
    context: PermissionsContext = Depends(get_permissions_context),
) -> AllowedAccountsResponse:
    accounts = await context.resolver.get_allowed_accounts(key_id, platform)
    return AllowedAccountsResponse(accounts=[AccountSummary.from_account(account) for account in accounts])


@router.get("/has-permission", response_model=HasPermissionResponse)
async def has_permission(
    key_id: str,
    account_id: str = Query(..., alias="accountId", min_length=1),
    platform: str = Query(..., min_length=1),
    context: PermissionsContext = Depends(get_permissions_context),
) -> HasPermissionResponse:
    return HasPermissionResponse(allowed=await context.resolver.has_permission(key_id, account_id, platform))


@router.post("/select", response_model=SelectAccountResponse)
async def select_account(
    key_id: str,
    payload: SelectAccountRequest = Body(...),
    context: SelectionContext = Depends(get_selection_context),
) -> SelectAccountResponse:
    account = await context.selector.select_best_account(key_id, payload.platform, payload.session_key)
    return SelectAccountResponse(account=AccountSummary.from_account(account) if account is not None else None)
