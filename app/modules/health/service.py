from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from app.core.balancer.eligibility import is_account_usable, is_api_key_valid
from app.core.balancer.health import (
    HealthTracked,
    apply_probe_result,
    is_mapping_available,
    mark_healthy,
    mark_unhealthy,
    probe_passes,
    record_failure,
    record_success,
    reset_health,
    success_rate,
    weight_score,
)
from app.core.config.settings import get_settings
from app.core.exceptions import AccountNotFoundError, ApiKeyNotFoundError, MappingNotFoundError
from app.core.metrics import get_metrics
from app.core.utils.locks import KeyedLocks
from app.core.utils.time import utcnow
from app.db.models import HealthStatus, KeyAccountMapping
from app.modules.shared.repo_bundle import RouterRepoFactory, RouterRepositories

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MappingHealthData:
    api_key_id: str
    account_id: str
    weight: int
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


def mapping_to_data(mapping: KeyAccountMapping, *, available: bool) -> MappingHealthData:
    return MappingHealthData(
        api_key_id=mapping.api_key_id,
        account_id=mapping.account_id,
        weight=mapping.weight,
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


class HealthService:
    def __init__(self, repo_factory: RouterRepoFactory) -> None:
        self._repo_factory = repo_factory
        self._locks = KeyedLocks()

    async def record_success(self, key_id: str, account_id: str, response_time_ms: float) -> MappingHealthData:
        return await self._transition(
            key_id,
            account_id,
            "success",
            lambda mapping, now: record_success(mapping, response_time_ms, now=now),
            release_connection=True,
        )

    async def record_failure(self, key_id: str, account_id: str) -> MappingHealthData:
        return await self._transition(
            key_id,
            account_id,
            "failure",
            lambda mapping, now: record_failure(mapping, now=now),
            release_connection=True,
        )

    async def mark_healthy(self, key_id: str, account_id: str) -> MappingHealthData:
        return await self._transition(
            key_id,
            account_id,
            "mark_healthy",
            lambda mapping, now: mark_healthy(mapping, now=now),
        )

    async def mark_unhealthy(
        self,
        key_id: str,
        account_id: str,
        disable_seconds: int | None = None,
    ) -> MappingHealthData:
        seconds = disable_seconds if disable_seconds is not None else get_settings().quarantine_seconds
        return await self._transition(
            key_id,
            account_id,
            "mark_unhealthy",
            lambda mapping, now: mark_unhealthy(mapping, seconds, now=now),
        )

    async def reset_health(self, key_id: str, account_id: str) -> MappingHealthData:
        return await self._transition(
            key_id,
            account_id,
            "reset",
            lambda mapping, now: reset_health(mapping, now=now),
        )

    async def get_mapping(self, key_id: str, account_id: str) -> MappingHealthData:
        async with self._repo_factory() as repos:
            mapping = await repos.key_mappings.get(key_id, account_id)
            if mapping is None:
                raise MappingNotFoundError(f"No health record for key '{key_id}' and account '{account_id}'")
            return mapping_to_data(mapping, available=await self._available(repos, mapping, utcnow()))

    async def list_mappings(self, key_id: str) -> list[MappingHealthData]:
        async with self._repo_factory() as repos:
            if await repos.api_keys.get(key_id) is None:
                raise ApiKeyNotFoundError(f"API key '{key_id}' not found")
            now = utcnow()
            return [
                mapping_to_data(mapping, available=await self._available(repos, mapping, now))
                for mapping in await repos.key_mappings.list_for_key(key_id)
            ]

    async def remove_mapping(self, key_id: str, account_id: str) -> None:
        async with self._locks.hold(f"{key_id}:{account_id}"):
            async with self._repo_factory() as repos:
                if not await repos.key_mappings.delete(key_id, account_id):
                    raise MappingNotFoundError(f"No health record for key '{key_id}' and account '{account_id}'")
        logger.info("mapping_removed key=%s account=%s", key_id, account_id)

    async def is_available(self, key_id: str, account_id: str) -> bool:
        async with self._repo_factory() as repos:
            mapping = await repos.key_mappings.get(key_id, account_id)
            if mapping is None:
                return False
            return await self._available(repos, mapping, utcnow())

    async def check_key_health(self, key_id: str) -> dict[str, bool]:
        async with self._repo_factory() as repos:
            account_ids = [mapping.account_id for mapping in await repos.key_mappings.list_for_key(key_id)]

        results: dict[str, bool] = {}
        for account_id in account_ids:
            try:
                results[account_id] = await self._check_one(key_id, account_id)
            except Exception:
                logger.exception("key_health_check_failed key=%s account=%s", key_id, account_id)
                get_metrics().observe_health_check_error(scope="key")
                results[account_id] = False
        return results

    async def _check_one(self, key_id: str, account_id: str) -> bool:
        async with self._locks.hold(f"{key_id}:{account_id}"):
            async with self._repo_factory() as repos:
                mapping = await repos.key_mappings.get(key_id, account_id)
                if mapping is None:
                    return False
                now = utcnow()
                account = await repos.accounts.get_account(account_id)
                healthy = probe_passes(mapping, account_usable=is_account_usable(account, now=now), now=now)
                apply_probe_result(mapping, healthy=healthy, now=now)
                await repos.key_mappings.save(mapping)
                return await self._available(repos, mapping, now)

    async def _transition(
        self,
        key_id: str,
        account_id: str,
        event: str,
        apply: Callable[[HealthTracked, datetime], None],
        *,
        release_connection: bool = False,
    ) -> MappingHealthData:
        async with self._locks.hold(f"{key_id}:{account_id}"):
            async with self._repo_factory() as repos:
                if await repos.api_keys.get(key_id) is None:
                    raise ApiKeyNotFoundError(f"API key '{key_id}' not found")
                account = await repos.accounts.get_account(account_id)
                if account is None:
                    raise AccountNotFoundError(f"Account '{account_id}' not found")
                mapping = await repos.key_mappings.ensure(key_id, account_id, weight=account.weight)
                now = utcnow()
                apply(mapping, now)
                mapping = await repos.key_mappings.save(mapping)
                if release_connection:
                    # Selections add connections with an atomic UPDATE outside this lock.
                    await repos.key_mappings.adjust_connections(key_id, account_id, -1)
                    mapping = await repos.key_mappings.get(key_id, account_id)
                    if mapping is None:
                        raise MappingNotFoundError(
                            f"No health record for key '{key_id}' and account '{account_id}'"
                        )
                data = mapping_to_data(mapping, available=await self._available(repos, mapping, now))

        logger.info(
            "mapping_health event=%s key=%s account=%s status=%s consecutive_failures=%s disabled_until=%s",
            event,
            key_id,
            account_id,
            data.health_status.value,
            data.consecutive_failures,
            data.disabled_until.isoformat() if data.disabled_until else None,
        )
        get_metrics().observe_health_event(scope="key", event=event)
        return data

    async def _available(self, repos: RouterRepositories, mapping: KeyAccountMapping, now: datetime) -> bool:
        api_key = await repos.api_keys.get(mapping.api_key_id)
        account = await repos.accounts.get_account(mapping.account_id)
        return is_mapping_available(
            mapping,
            owner_valid=is_api_key_valid(api_key, now=now),
            account_usable=is_account_usable(account, now=now),
            now=now,
        )
