from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from app.core.errors import dashboard_error
from app.core.utils.time import optional_utc_naive
from app.db.models import Account, ApiKey
from app.dependencies import AdminContext, get_admin_context
from app.modules.accounts.schemas import (
    AccountsResponse,
    AccountStatusRequest,
    AccountSummary,
    AccountUpsertRequest,
    ApiKeysResponse,
    ApiKeySummary,
    ApiKeyUpsertRequest,
    DeleteResponse,
)

router = APIRouter(prefix="/api", tags=["admin"])


@router.get("/accounts", response_model=AccountsResponse)
async def list_accounts(
    context: AdminContext = Depends(get_admin_context),
) -> AccountsResponse:
    accounts = await context.accounts.list_accounts()
    return AccountsResponse(accounts=[AccountSummary.from_account(account) for account in accounts])


@router.put("/accounts/{account_id}", response_model=AccountSummary)
async def upsert_account(
    account_id: str,
    payload: AccountUpsertRequest = Body(...),
    context: AdminContext = Depends(get_admin_context),
) -> AccountSummary:
    account = await context.accounts.upsert(
        Account(
            id=account_id,
            name=payload.name,
            platform=payload.platform.strip().lower(),
            pool_group=payload.pool_group,
            priority=payload.priority,
            weight=payload.weight,
            is_enabled=payload.is_enabled,
            status=payload.status,
            rate_limited_until=optional_utc_naive(payload.rate_limited_until),
            usage_count=0,
        )
    )
    return AccountSummary.from_account(account)


@router.delete("/accounts/{account_id}", response_model=DeleteResponse)
async def delete_account(
    account_id: str,
    context: AdminContext = Depends(get_admin_context),
) -> DeleteResponse | JSONResponse:
    if not await context.accounts.delete(account_id):
        return JSONResponse(status_code=404, content=dashboard_error("account_not_found", "Account not found"))
    return DeleteResponse(status="deleted")


@router.put("/accounts/{account_id}/status", response_model=AccountSummary)
async def update_account_status(
    account_id: str,
    payload: AccountStatusRequest = Body(...),
    context: AdminContext = Depends(get_admin_context),
) -> AccountSummary | JSONResponse:
    updated = await context.accounts.update_status(
        account_id,
        payload.status,
        optional_utc_naive(payload.rate_limited_until),
    )
    account = await context.accounts.get_account(account_id) if updated else None
    if account is None:
        return JSONResponse(status_code=404, content=dashboard_error("account_not_found", "Account not found"))
    return AccountSummary.from_account(account)


@router.get("/keys", response_model=ApiKeysResponse)
async def list_api_keys(
    context: AdminContext = Depends(get_admin_context),
) -> ApiKeysResponse:
    keys = await context.api_keys.list_keys()
    return ApiKeysResponse(
        keys=[
            ApiKeySummary(
                id=key.id,
                name=key.name,
                is_enabled=key.is_enabled,
                expires_at=key.expires_at,
                created_at=key.created_at,
            )
            for key in keys
        ]
    )


@router.put("/keys/{key_id}", response_model=ApiKeySummary)
async def upsert_api_key(
    key_id: str,
    payload: ApiKeyUpsertRequest = Body(...),
    context: AdminContext = Depends(get_admin_context),
) -> ApiKeySummary:
    key = await context.api_keys.upsert(
        ApiKey(
            id=key_id,
            name=payload.name,
            is_enabled=payload.is_enabled,
            expires_at=optional_utc_naive(payload.expires_at),
        )
    )
    return ApiKeySummary(
        id=key.id,
        name=key.name,
        is_enabled=key.is_enabled,
        expires_at=key.expires_at,
        created_at=key.created_at,
    )


@router.delete("/keys/{key_id}", response_model=DeleteResponse)
async def delete_api_key(
    key_id: str,
    context: AdminContext = Depends(get_admin_context),
) -> DeleteResponse | JSONResponse:
    if not await context.api_keys.delete(key_id):
        return JSONResponse(status_code=404, content=dashboard_error("api_key_not_found", "API key not found"))
    return DeleteResponse(status="deleted")
