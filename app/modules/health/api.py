from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from app.dependencies import HealthContext, get_health_context
from app.modules.accounts.schemas import DeleteResponse
from app.modules.health.schemas import (
    HealthCheckResponse,
    MappingHealthListResponse,
    MappingHealthResponse,
    MarkUnhealthyRequest,
    RecordSuccessRequest,
)

router = APIRouter(prefix="/api/keys/{key_id}", tags=["health"])


@router.get("/accounts", response_model=MappingHealthListResponse)
async def list_mappings(
    key_id: str,
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthListResponse:
    mappings = await context.service.list_mappings(key_id)
    return MappingHealthListResponse(mappings=[MappingHealthResponse.from_data(entry) for entry in mappings])


@router.get("/accounts/{account_id}/health", response_model=MappingHealthResponse)
async def get_mapping_health(
    key_id: str,
    account_id: str,
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    return MappingHealthResponse.from_data(await context.service.get_mapping(key_id, account_id))


@router.post("/accounts/{account_id}/success", response_model=MappingHealthResponse)
async def record_success(
    key_id: str,
    account_id: str,
    payload: RecordSuccessRequest = Body(...),
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    data = await context.service.record_success(key_id, account_id, payload.response_time_ms)
    return MappingHealthResponse.from_data(data)


@router.post("/accounts/{account_id}/failure", response_model=MappingHealthResponse)
async def record_failure(
    key_id: str,
    account_id: str,
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    return MappingHealthResponse.from_data(await context.service.record_failure(key_id, account_id))


@router.post("/accounts/{account_id}/mark-healthy", response_model=MappingHealthResponse)
async def mark_healthy(
    key_id: str,
    account_id: str,
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    return MappingHealthResponse.from_data(await context.service.mark_healthy(key_id, account_id))


@router.post("/accounts/{account_id}/mark-unhealthy", response_model=MappingHealthResponse)
async def mark_unhealthy(
    key_id: str,
    account_id: str,
    payload: MarkUnhealthyRequest | None = Body(default=None),
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    disable_seconds = payload.disable_seconds if payload is not None else None
    data = await context.service.mark_unhealthy(key_id, account_id, disable_seconds)
    return MappingHealthResponse.from_data(data)


@router.post("/accounts/{account_id}/reset-health", response_model=MappingHealthResponse)
async def reset_health(
    key_id: str,
    account_id: str,
    context: HealthContext = Depends(get_health_context),
) -> MappingHealthResponse:
    return MappingHealthResponse.from_data(await context.service.reset_health(key_id, account_id))


@router.post("/health-check", response_model=HealthCheckResponse)
async def check_key_health(
    key_id: str,
    context: HealthContext = Depends(get_health_context),
) -> HealthCheckResponse:
    return HealthCheckResponse(results=await context.service.check_key_health(key_id))


@router.delete("/accounts/{account_id}", response_model=DeleteResponse)
async def remove_mapping(
    key_id: str,
    account_id: str,
    context: HealthContext = Depends(get_health_context),
) -> DeleteResponse:
    await context.service.remove_mapping(key_id, account_id)
    return DeleteResponse(status="deleted")
