from __future__ import annotations

import random
from datetime import timedelta

import pytest

from app.core.exceptions import (
    DuplicateGroupError,
    DuplicateGroupMappingError,
    GroupNotFoundError,
    InvalidGroupError,
    ProtectedGroupError,
)
from app.core.utils.time import utcnow
from app.db.models import (
    Account,
    AccountStatus,
    FailoverStrategy,
    GroupType,
    HealthStatus,
    LoadBalanceStrategy,
)
from app.db.session import SessionLocal
from app.dependencies import router_repo_context
from app.modules.accounts.repository import AccountsRepository
from app.modules.groups.balancer import GroupLoadBalancer
from app.modules.groups.repository import GroupsRepository
from app.modules.groups.service import GroupInput, GroupMappingInput, GroupMappingUpdate, GroupsService, GroupUpdate

pytestmark = pytest.mark.integration


async def _create_group(
    *account_ids: str,
    strategy: LoadBalanceStrategy = LoadBalanceStrategy.ROUND_ROBIN,
    failover: FailoverStrategy = FailoverStrategy.FAILOVER,
    **kwargs,
) -> int:
    async with SessionLocal() as session:
        accounts = AccountsRepository(session)
        for account_id in account_ids:
            await accounts.upsert(Account(id=account_id, name=account_id, platform="claude", pool_group="main"))
        service = GroupsService(GroupsRepository(session), accounts)
        group = await service.create_group(
            GroupInput(name="primary", load_balance_strategy=strategy, failover_strategy=failover, **kwargs)
        )
        for order, account_id in enumerate(account_ids):
            await service.add_account(group.id, account_id, GroupMappingInput(weight=1, order=order))
        return group.id


def _balancer(**kwargs) -> GroupLoadBalancer:
    return GroupLoadBalancer(router_repo_context, failure_threshold=3, quarantine_seconds=300, **kwargs)


@pytest.mark.asyncio
async def test_new_group_rejects_until_health_checked(db_setup):
    group_id = await _create_group("a", "b")
    balancer = _balancer()

    assert await balancer.select_account(group_id) is None

    assert await balancer.check_group_health(group_id) is True
    selection = await balancer.select_account(group_id)
    assert selection is not None
    assert selection.account_id == "a"


@pytest.mark.asyncio
async def test_round_robin_rotates_and_tracks_connections(db_setup):
    group_id = await _create_group("a", "b", "c")
    balancer = _balancer()
    await balancer.check_group_health(group_id)

    picks = [(await balancer.select_account(group_id)).account_id for _ in range(4)]

    assert picks == ["a", "b", "c", "a"]
    async with router_repo_context() as repos:
        stats = await repos.groups.get_statistics(group_id)
        mapping = await repos.groups.get_mapping(group_id, "a")
        account = await repos.accounts.get_account("a")
        assert stats.current_connections == 4
        assert stats.peak_connections == 4
        assert mapping.current_connections == 2
        assert account.usage_count == 2


@pytest.mark.asyncio
async def test_least_connections_prefers_idle_account(db_setup):
    group_id = await _create_group("a", "b", strategy=LoadBalanceStrategy.LEAST_CONNECTIONS)
    balancer = _balancer()
    await balancer.check_group_health(group_id)

    first = await balancer.select_account(group_id)
    second = await balancer.select_account(group_id)

    assert {first.account_id, second.account_id} == {"a", "b"}


@pytest.mark.asyncio
async def test_weighted_selection_uses_rng(db_setup):
    group_id = await _create_group("a", "b", strategy=LoadBalanceStrategy.WEIGHTED)
    balancer = _balancer(rng=random.Random(5))
    await balancer.check_group_health(group_id)

    picks = {(await balancer.select_account(group_id)).account_id for _ in range(30)}

    assert picks == {"a", "b"}


@pytest.mark.asyncio
async def test_record_usage_updates_mapping_and_statistics(db_setup):
    group_id = await _create_group("a")
    balancer = _balancer()
    await balancer.check_group_health(group_id)
    await balancer.select_account(group_id)

    data = await balancer.record_usage(group_id, "a", success=True, cost=0.25, response_time_ms=120.0)

    assert data.successful_requests == 1
    assert data.current_connections == 0
    info = await balancer.get_usage_info(group_id)
    assert info.total_requests == 1
    assert info.total_cost == pytest.approx(0.25)
    assert info.success_rate == pytest.approx(1.0)
    assert info.healthy_account_count == 1


@pytest.mark.asyncio
async def test_failure_threshold_quarantines_account(db_setup):
    group_id = await _create_group("a", "b")
    balancer = _balancer()
    await balancer.check_group_health(group_id)

    for _ in range(2):
        data = await balancer.record_usage(group_id, "a", success=False)
    assert data.health_status != HealthStatus.UNHEALTHY

    data = await balancer.record_usage(group_id, "a", success=False)
    assert data.health_status == HealthStatus.UNHEALTHY
    assert data.disabled_until is not None
    assert data.is_available is False

    picks = {(await balancer.select_account(group_id)).account_id for _ in range(3)}
    assert picks == {"b"}

    recovered = await balancer.recover(group_id, "a")
    assert recovered.is_available is True


@pytest.mark.asyncio
async def test_failover_selects_another_account(db_setup):
    group_id = await _create_group("a", "b")
    balancer = _balancer()
    await balancer.check_group_health(group_id)

    selection = await balancer.perform_failover(group_id, "a")

    assert selection is not None
    assert selection.account_id == "b"
    async with router_repo_context() as repos:
        mapping = await repos.groups.get_mapping(group_id, "a")
        assert mapping.consecutive_failures == 1


@pytest.mark.asyncio
async def test_failfast_group_skips_failover(db_setup):
    group_id = await _create_group("a", "b", failover=FailoverStrategy.FAILFAST)
    balancer = _balancer()
    await balancer.check_group_health(group_id)

    assert await balancer.perform_failover(group_id, "a") is None


@pytest.mark.asyncio
async def test_group_unhealthy_when_no_account_available(db_setup):
    group_id = await _create_group("a")
    async with router_repo_context() as repos:
        await repos.accounts.update_status("a", AccountStatus.PAUSED)
    balancer = _balancer()

    assert await balancer.check_group_health(group_id) is False
    async with router_repo_context() as repos:
        group = await repos.groups.get(group_id)
        assert group.health_status == HealthStatus.UNHEALTHY
        assert group.last_health_check_at is not None


@pytest.mark.asyncio
async def test_health_check_recovers_expired_quarantine(db_setup):
    group_id = await _create_group("a")
    balancer = _balancer()
    await balancer.check_group_health(group_id)
    for _ in range(3):
        await balancer.handle_failure(group_id, "a")
    async with router_repo_context() as repos:
        mapping = await repos.groups.get_mapping(group_id, "a")
        mapping.disabled_until = utcnow() - timedelta(seconds=1)
        await repos.groups.save(mapping)

    assert await balancer.check_accounts_health(group_id) == {"a": True}


@pytest.mark.asyncio
async def test_request_limit_blocks_selection(db_setup):
    group_id = await _create_group("a", request_limit=1)
    balancer = _balancer()
    await balancer.check_group_health(group_id)
    await balancer.select_account(group_id)
    await balancer.record_usage(group_id, "a", success=True)

    assert await balancer.select_account(group_id) is None


@pytest.mark.asyncio
async def test_statistics_refresh_and_reset(db_setup):
    group_id = await _create_group("a", "b")
    balancer = _balancer()
    await balancer.check_group_health(group_id)
    await balancer.record_usage(group_id, "a", success=True, response_time_ms=100.0)
    await balancer.record_usage(group_id, "b", success=False)

    refreshed = await balancer.refresh_statistics(group_id)
    assert refreshed.total_requests == 2
    assert refreshed.successful_requests == 1
    assert refreshed.failure_rate == pytest.approx(0.5)

    reset = await balancer.reset_statistics(group_id)
    assert reset.total_requests == 0
    assert reset.peak_connections == 0


@pytest.mark.asyncio
async def test_check_all_groups_only_due(db_setup):
    group_id = await _create_group("a")
    balancer = _balancer()

    assert await balancer.check_all_groups(due_only=True) == {group_id: True}
    assert await balancer.check_all_groups(due_only=True) == {}
    assert await balancer.check_all_groups() == {group_id: True}


@pytest.mark.asyncio
async def test_missing_group_raises(db_setup):
    with pytest.raises(GroupNotFoundError):
        await _balancer().select_account(999)


@pytest.mark.asyncio
async def test_group_service_validation_and_conflicts(db_setup):
    group_id = await _create_group("a")
    async with SessionLocal() as session:
        service = GroupsService(GroupsRepository(session), AccountsRepository(session))

        with pytest.raises(DuplicateGroupError):
            await service.create_group(GroupInput(name="PRIMARY"))
        with pytest.raises(InvalidGroupError):
            await service.create_group(GroupInput(name="limits", cost_limit=0))
        with pytest.raises(DuplicateGroupMappingError):
            await service.add_account(group_id, "a", GroupMappingInput())

        updated = await service.update_group(group_id, GroupUpdate(request_limit=10, priority=5))
        assert updated.request_limit == 10
        cleared = await service.update_group(group_id, GroupUpdate(clear_request_limit=True))
        assert cleared.request_limit is None

        toggled = await service.toggle_group(group_id)
        assert toggled.is_enabled is False


@pytest.mark.asyncio
async def test_primary_flag_is_exclusive(db_setup):
    group_id = await _create_group("a", "b")
    async with SessionLocal() as session:
        service = GroupsService(GroupsRepository(session), AccountsRepository(session))
        await service.update_account(group_id, "a", GroupMappingUpdate(is_primary=True))
        await service.update_account(group_id, "b", GroupMappingUpdate(is_primary=True))

        primaries = [mapping.account_id for mapping in await service.list_accounts(group_id) if mapping.is_primary]
        assert primaries == ["b"]


@pytest.mark.asyncio
async def test_remove_account_updates_count_and_system_group_is_protected(db_setup):
    group_id = await _create_group("a", "b")
    async with SessionLocal() as session:
        service = GroupsService(GroupsRepository(session), AccountsRepository(session))
        await service.remove_account(group_id, "a")
        group = await service.get_group(group_id)
        assert group.account_count == 1

        system = await service.create_group(GroupInput(name="system", group_type=GroupType.SYSTEM))
        with pytest.raises(ProtectedGroupError):
            await service.delete_group(system.id)

        await service.delete_group(group_id)
        with pytest.raises(GroupNotFoundError):
            await service.get_group(group_id)
