from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.balancer.eligibility import is_account_usable
from app.core.balancer.groups import (
    GroupUsageInfo,
    StatisticsSummary,
    aggregate_statistics,
    can_accept_request,
    record_request,
    reset_statistics,
    statistics_summary,
    track_connection,
    usage_info,
)
from app.core.balancer.health import (
    apply_probe_result,
    mark_healthy,
    mark_unhealthy,
    probe_passes,
    record_failure,
    record_success,
)
from app.core.balancer.strategies import select_mapping
from app.core.config.settings import get_settings
from app.core.exceptions import GroupNotFoundError, MappingNotFoundError
from app.core.metrics import get_metrics
from app.core.utils.locks import KeyedLocks
from app.core.utils.time import utcnow
from app.db.models import AccountGroup, FailoverStrategy, GroupAccountMapping, HealthStatus
from app.modules.groups.service import GroupMappingData, group_mapping_available, group_mapping_to_data
from app.modules.shared.repo_bundle import RouterRepoFactory, RouterRepositories

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GroupSelection:
    group_id: int
    account_id: str
    strategy: str
    mapping: GroupMappingData


class GroupLoadBalancer:
    """Selection, outcome tracking and health checks for account groups.

    All mutations of one group (cursor, mapping counters, statistics) run under that group's lock.
    """

    def __init__(
        self,
        repo_factory: RouterRepoFactory,
        *,
        rng: random.Random | None = None,
        failure_threshold: int | None = None,
        quarantine_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._repo_factory = repo_factory
        self._rng = rng or random.Random()
        self._failure_threshold = failure_threshold or settings.group_failure_threshold
        self._quarantine_seconds = quarantine_seconds or settings.quarantine_seconds
        self._locks = KeyedLocks()

    async def select_account(self, group_id: int) -> GroupSelection | None:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                return await self._select(repos, group_id, exclude=frozenset())

    async def record_usage(
        self,
        group_id: int,
        account_id: str,
        *,
        success: bool,
        cost: float = 0.0,
        response_time_ms: float = 0.0,
    ) -> GroupMappingData:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                group, mapping = await self._require_mapping(repos, group_id, account_id)
                stats = await repos.groups.get_statistics(group_id)
                now = utcnow()
                if success:
                    record_success(mapping, response_time_ms, now=now)
                else:
                    self._apply_failure(mapping, now=now)
                mapping.current_connections = max(0, mapping.current_connections - 1)
                record_request(stats, success=success, cost=cost, response_time_ms=response_time_ms, now=now)
                track_connection(stats, -1)
                await repos.groups.save(mapping, stats)
                data = await self._mapping_data(repos, group, mapping)

        get_metrics().observe_health_event(scope="group", event="success" if success else "failure")
        logger.debug(
            "group_usage group=%s account=%s success=%s cost=%s response_time_ms=%s",
            group_id,
            account_id,
            success,
            cost,
            response_time_ms,
        )
        return data

    async def handle_failure(self, group_id: int, account_id: str) -> GroupMappingData:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                return await self._handle_failure(repos, group_id, account_id)

    async def recover(self, group_id: int, account_id: str) -> GroupMappingData:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                group, mapping = await self._require_mapping(repos, group_id, account_id)
                mark_healthy(mapping)
                await repos.groups.save(mapping)
                data = await self._mapping_data(repos, group, mapping)
        logger.info("group_account_recovered group=%s account=%s", group_id, account_id)
        get_metrics().observe_health_event(scope="group", event="mark_healthy")
        return data

    async def perform_failover(self, group_id: int, failed_account_id: str) -> GroupSelection | None:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                group = await self._require_group(repos, group_id)
                if group.failover_strategy == FailoverStrategy.FAILFAST:
                    logger.info("group_failover_skipped group=%s account=%s reason=failfast", group_id, failed_account_id)
                    get_metrics().observe_selection(
                        scope="group",
                        strategy=group.load_balance_strategy.value,
                        outcome="failfast",
                    )
                    return None
                await self._handle_failure(repos, group_id, failed_account_id)
                selection = await self._select(repos, group_id, exclude=frozenset({failed_account_id}))
        logger.info(
            "group_failover group=%s failed_account=%s selected=%s",
            group_id,
            failed_account_id,
            selection.account_id if selection is not None else None,
        )
        return selection

    async def check_accounts_health(self, group_id: int) -> dict[str, bool]:
        async with self._repo_factory() as repos:
            await self._require_group(repos, group_id)
            account_ids = [mapping.account_id for mapping in await repos.groups.list_mappings(group_id)]

        results: dict[str, bool] = {}
        for account_id in account_ids:
            try:
                results[account_id] = await self._check_mapping(group_id, account_id)
            except Exception:
                logger.exception("group_account_health_check_failed group=%s account=%s", group_id, account_id)
                get_metrics().observe_health_check_error(scope="group_account")
                results[account_id] = False
        return results

    async def check_group_health(self, group_id: int) -> bool:
        results = await self.check_accounts_health(group_id)
        healthy = any(results.values())
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                group = await self._require_group(repos, group_id)
                group.health_status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
                group.last_health_check_at = utcnow()
                await repos.groups.save(group)
                name = group.name
        get_metrics().set_group_health(group=name, healthy=healthy)
        logger.info(
            "group_health_checked group=%s healthy=%s available_accounts=%s total_accounts=%s",
            group_id,
            healthy,
            sum(1 for value in results.values() if value),
            len(results),
        )
        return healthy

    async def check_all_groups(self, *, due_only: bool = False) -> dict[int, bool]:
        async with self._repo_factory() as repos:
            groups = await repos.groups.list_groups(enabled_only=due_only)
            now = utcnow()
            group_ids = [group.id for group in groups if not due_only or _health_check_due(group, now)]

        results: dict[int, bool] = {}
        for group_id in group_ids:
            try:
                results[group_id] = await self.check_group_health(group_id)
            except Exception:
                logger.exception("group_health_check_failed group=%s", group_id)
                get_metrics().observe_health_check_error(scope="group")
                results[group_id] = False
        return results

    async def refresh_statistics(self, group_id: int) -> StatisticsSummary:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                await self._require_group(repos, group_id)
                stats = await repos.groups.get_statistics(group_id)
                aggregate_statistics(stats, await repos.groups.list_mappings(group_id))
                await repos.groups.save(stats)
                return statistics_summary(stats)

    async def reset_statistics(self, group_id: int) -> StatisticsSummary:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                await self._require_group(repos, group_id)
                stats = await repos.groups.get_statistics(group_id)
                reset_statistics(stats)
                await repos.groups.save(stats)
                logger.info("group_statistics_reset group=%s", group_id)
                return statistics_summary(stats)

    async def get_usage_info(self, group_id: int) -> GroupUsageInfo:
        async with self._repo_factory() as repos:
            group = await self._require_group(repos, group_id)
            stats = await repos.groups.get_statistics(group_id)
            mappings = await repos.groups.list_mappings(group_id)
            accounts = await repos.accounts.get_accounts([mapping.account_id for mapping in mappings])
            now = utcnow()
            healthy = sum(
                1
                for mapping in mappings
                if group_mapping_available(group, mapping, accounts.get(mapping.account_id), now=now)
            )
            return usage_info(group, stats, healthy_account_count=healthy)

    async def _select(
        self,
        repos: RouterRepositories,
        group_id: int,
        *,
        exclude: frozenset[str],
    ) -> GroupSelection | None:
        group = await self._require_group(repos, group_id)
        stats = await repos.groups.get_statistics(group_id)
        strategy = group.load_balance_strategy
        if not can_accept_request(group, stats):
            logger.info(
                "group_select_rejected group=%s enabled=%s health=%s accounts=%s",
                group_id,
                group.is_enabled,
                group.health_status.value,
                group.account_count,
            )
            get_metrics().observe_selection(scope="group", strategy=strategy.value, outcome="rejected")
            return None

        mappings = [mapping for mapping in await repos.groups.list_mappings(group_id) if mapping.account_id not in exclude]
        accounts = await repos.accounts.get_accounts([mapping.account_id for mapping in mappings])
        now = utcnow()
        candidates = [
            mapping
            for mapping in mappings
            if group_mapping_available(group, mapping, accounts.get(mapping.account_id), now=now)
        ]
        choice = select_mapping(candidates, strategy, round_robin_index=group.round_robin_index, rng=self._rng)
        chosen = choice.mapping
        if chosen is None:
            logger.info("group_select_none group=%s strategy=%s", group_id, strategy.value)
            get_metrics().observe_selection(scope="group", strategy=strategy.value, outcome="no_available")
            return None

        group.round_robin_index = choice.next_round_robin_index
        chosen.current_connections += 1
        chosen.last_used_at = now
        track_connection(stats, 1)
        await repos.groups.save(group, chosen, stats)
        await repos.accounts.mark_used(chosen.account_id, now=now)

        logger.info(
            "group_select group=%s strategy=%s account=%s candidates=%s",
            group_id,
            strategy.value,
            chosen.account_id,
            len(candidates),
        )
        get_metrics().observe_selection(scope="group", strategy=strategy.value, outcome="selected")
        return GroupSelection(
            group_id=group_id,
            account_id=chosen.account_id,
            strategy=strategy.value,
            mapping=group_mapping_to_data(chosen, available=True),
        )

    async def _handle_failure(self, repos: RouterRepositories, group_id: int, account_id: str) -> GroupMappingData:
        group, mapping = await self._require_mapping(repos, group_id, account_id)
        quarantined = self._apply_failure(mapping)
        mapping.current_connections = max(0, mapping.current_connections - 1)
        await repos.groups.save(mapping)
        if quarantined:
            logger.warning(
                "group_account_quarantined group=%s account=%s consecutive_failures=%s disabled_until=%s",
                group_id,
                account_id,
                mapping.consecutive_failures,
                mapping.disabled_until.isoformat() if mapping.disabled_until else None,
            )
            get_metrics().observe_health_event(scope="group", event="mark_unhealthy")
        return await self._mapping_data(repos, group, mapping)

    def _apply_failure(self, mapping: GroupAccountMapping, *, now: datetime | None = None) -> bool:
        current = now if now is not None else utcnow()
        record_failure(mapping, now=current)
        if mapping.consecutive_failures >= self._failure_threshold:
            mark_unhealthy(mapping, self._quarantine_seconds, now=current)
            return True
        return False

    async def _check_mapping(self, group_id: int, account_id: str) -> bool:
        async with self._locks.hold(_lock_key(group_id)):
            async with self._repo_factory() as repos:
                group, mapping = await self._require_mapping(repos, group_id, account_id)
                now = utcnow()
                account = await repos.accounts.get_account(account_id)
                healthy = probe_passes(mapping, account_usable=is_account_usable(account, now=now), now=now)
                apply_probe_result(mapping, healthy=healthy, now=now)
                await repos.groups.save(mapping)
                return group_mapping_available(group, mapping, account, now=now)

    async def _mapping_data(
        self,
        repos: RouterRepositories,
        group: AccountGroup,
        mapping: GroupAccountMapping,
    ) -> GroupMappingData:
        account = await repos.accounts.get_account(mapping.account_id)
        return group_mapping_to_data(mapping, available=group_mapping_available(group, mapping, account))

    async def _require_group(self, repos: RouterRepositories, group_id: int) -> AccountGroup:
        group = await repos.groups.get(group_id)
        if group is None:
            raise GroupNotFoundError(f"Group '{group_id}' not found")
        return group

    async def _require_mapping(
        self,
        repos: RouterRepositories,
        group_id: int,
        account_id: str,
    ) -> tuple[AccountGroup, GroupAccountMapping]:
        group = await self._require_group(repos, group_id)
        mapping = await repos.groups.get_mapping(group_id, account_id)
        if mapping is None:
            raise MappingNotFoundError(f"Account '{account_id}' is not in group '{group.name}'")
        return group, mapping


def _lock_key(group_id: int) -> str:
    return f"group:{group_id}"


def _health_check_due(group: AccountGroup, now: datetime) -> bool:
    if group.last_health_check_at is None:
        return True
    return now - group.last_health_check_at >= timedelta(seconds=group.health_check_interval_seconds)
