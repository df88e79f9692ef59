from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta

import pytest

from app.core.exceptions import AccountNotFoundError, ApiKeyNotFoundError, MappingNotFoundError
from app.core.utils.time import utcnow
from app.db.models import Account, AccountStatus, ApiKey, HealthStatus
from app.dependencies import router_repo_context
from app.modules.health.repository import KeyAccountMappingsRepository
from app.modules.health.service import HealthService

pytestmark = pytest.mark.integration


async def _seed(*accounts: Account) -> None:
    async with router_repo_context() as repos:
        await repos.api_keys.upsert(ApiKey(id="key-1", name="key-1", is_enabled=True))
        for account in accounts:
            await repos.accounts.upsert(account)


def _account(account_id: str = "acc-1", **kwargs) -> Account:
    return Account(id=account_id, name=account_id, platform="claude", pool_group="main", weight=4, **kwargs)


@pytest.mark.asyncio
async def test_record_success_creates_mapping_with_account_weight(db_setup):
    await _seed(_account())
    service = HealthService(router_repo_context)

    data = await service.record_success("key-1", "acc-1", 250.0)

    assert data.weight == 4
    assert data.successful_requests == 1
    assert data.total_usage_count == 1
    assert data.average_response_time_ms == pytest.approx(250.0)
    assert data.success_rate == pytest.approx(1.0)
    assert data.is_available is True


@pytest.mark.asyncio
async def test_failures_accumulate_without_quarantine(db_setup):
    await _seed(_account())
    service = HealthService(router_repo_context)

    for _ in range(4):
        data = await service.record_failure("key-1", "acc-1")

    assert data.consecutive_failures == 4
    assert data.failed_requests == 4
    assert data.disabled_until is None
    assert data.is_available is True

    data = await service.record_success("key-1", "acc-1", 100.0)
    assert data.consecutive_failures == 0


@pytest.mark.asyncio
async def test_outcomes_release_connections(db_setup):
    await _seed(_account())
    async with router_repo_context() as repos:
        await repos.key_mappings.ensure("key-1", "acc-1")
        await repos.key_mappings.adjust_connections("key-1", "acc-1", 2)

    service = HealthService(router_repo_context)
    await service.record_success("key-1", "acc-1", 10.0)
    data = await service.record_failure("key-1", "acc-1")
    assert data.current_connections == 0

    data = await service.record_failure("key-1", "acc-1")
    assert data.current_connections == 0


@pytest.mark.asyncio
async def test_mark_unhealthy_quarantines_then_mark_healthy_restores(db_setup):
    await _seed(_account())
    service = HealthService(router_repo_context)

    before = utcnow()
    data = await service.mark_unhealthy("key-1", "acc-1", 120)
    assert data.health_status == HealthStatus.UNHEALTHY
    assert data.disabled_until is not None
    assert data.disabled_until >= before + timedelta(seconds=119)
    assert data.is_available is False
    assert await service.is_available("key-1", "acc-1") is False

    data = await service.mark_healthy("key-1", "acc-1")
    assert data.health_status == HealthStatus.HEALTHY
    assert data.disabled_until is None
    assert await service.is_available("key-1", "acc-1") is True


@pytest.mark.asyncio
async def test_mark_unhealthy_uses_configured_default(db_setup, monkeypatch):
    monkeypatch.setenv("POOL_ROUTER_QUARANTINE_SECONDS", "30")
    await _seed(_account())
    service = HealthService(router_repo_context)

    before = utcnow()
    data = await service.mark_unhealthy("key-1", "acc-1")

    assert data.disabled_until is not None
    assert data.disabled_until <= before + timedelta(seconds=31)


@pytest.mark.asyncio
async def test_reset_health(db_setup):
    await _seed(_account())
    service = HealthService(router_repo_context)
    await service.record_failure("key-1", "acc-1")
    await service.mark_unhealthy("key-1", "acc-1")

    data = await service.reset_health("key-1", "acc-1")

    assert data.health_status == HealthStatus.UNKNOWN
    assert data.consecutive_failures == 0
    assert data.disabled_until is None
    assert data.failed_requests == 1


@pytest.mark.asyncio
async def test_unavailable_when_account_paused(db_setup):
    await _seed(_account(status=AccountStatus.PAUSED))
    service = HealthService(router_repo_context)

    data = await service.mark_healthy("key-1", "acc-1")

    assert data.is_available is False


@pytest.mark.asyncio
async def test_transitions_validate_references(db_setup):
    await _seed(_account())
    service = HealthService(router_repo_context)

    with pytest.raises(ApiKeyNotFoundError):
        await service.record_success("missing", "acc-1", 10.0)
    with pytest.raises(AccountNotFoundError):
        await service.record_failure("key-1", "missing")
    with pytest.raises(MappingNotFoundError):
        await service.get_mapping("key-1", "acc-1")
    assert await service.is_available("key-1", "acc-1") is False


@pytest.mark.asyncio
async def test_health_check_recovers_expired_quarantine(db_setup):
    await _seed(_account("expired"), _account("active"), _account("paused", status=AccountStatus.PAUSED))
    service = HealthService(router_repo_context)
    await service.mark_healthy("key-1", "paused")
    await service.mark_unhealthy("key-1", "active", 600)
    await service.mark_unhealthy("key-1", "expired", 600)
    async with router_repo_context() as repos:
        mapping = await repos.key_mappings.get("key-1", "expired")
        mapping.disabled_until = utcnow() - timedelta(seconds=1)
        await repos.key_mappings.save(mapping)

    results = await service.check_key_health("key-1")

    assert results == {"expired": True, "active": False, "paused": False}
    expired = await service.get_mapping("key-1", "expired")
    assert expired.health_status == HealthStatus.HEALTHY
    active = await service.get_mapping("key-1", "active")
    assert active.health_status == HealthStatus.UNHEALTHY
    assert active.disabled_until is not None


@pytest.mark.asyncio
async def test_list_mappings(db_setup):
    await _seed(_account("a1"), _account("a2"))
    service = HealthService(router_repo_context)
    await service.record_success("key-1", "a1", 10.0)
    await service.record_failure("key-1", "a2")

    listed = await service.list_mappings("key-1")

    assert {entry.account_id for entry in listed} == {"a1", "a2"}
    with pytest.raises(ApiKeyNotFoundError):
        await service.list_mappings("missing")


class _SelectionDuringSave:
    """Counts a connection from another session right before the outcome row is written."""

    def __init__(self, inner: KeyAccountMappingsRepository) -> None:
        self._inner = inner

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    async def save(self, mapping):
        async with router_repo_context() as other:
            await other.key_mappings.adjust_connections(mapping.api_key_id, mapping.account_id, 1)
        return await self._inner.save(mapping)


@asynccontextmanager
async def _interleaved_repo_context():
    async with router_repo_context() as repos:
        yield replace(repos, key_mappings=_SelectionDuringSave(repos.key_mappings))


@pytest.mark.asyncio
async def test_outcome_keeps_connection_counted_by_concurrent_selection(db_setup):
    await _seed(_account())
    async with router_repo_context() as repos:
        await repos.key_mappings.ensure("key-1", "acc-1")
        await repos.key_mappings.adjust_connections("key-1", "acc-1", 1)

    data = await HealthService(_interleaved_repo_context).record_success("key-1", "acc-1", 50.0)

    assert data.successful_requests == 1
    assert data.current_connections == 1
    fresh = await HealthService(router_repo_context).get_mapping("key-1", "acc-1")
    assert fresh.current_connections == 1
