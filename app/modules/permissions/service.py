from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from app.core.balancer.rules import WILDCARD_PLATFORM
from app.core.balancer.strategies import coerce_selection_strategy
from app.core.exceptions import ApiKeyNotFoundError, DuplicatePermissionError, InvalidPermissionError
from app.core.metrics import get_metrics
from app.core.utils.time import optional_utc_naive
from app.db.models import PermissionRule, SelectionStrategy
from app.modules.accounts.repository import AccountsRepository
from app.modules.api_keys.repository import ApiKeysRepository
from app.modules.permissions.repository import PermissionsRepository

logger = logging.getLogger(__name__)

MIN_RULE_PRIORITY = 0
MAX_RULE_PRIORITY = 100


@dataclass(frozen=True, slots=True)
class PermissionRuleInput:
    pool_group: str
    allowed_platforms: Sequence[str]
    allowed_account_ids: Sequence[str] | None = None
    selection_strategy: SelectionStrategy | str = SelectionStrategy.PRIORITY
    priority: int = 50
    is_enabled: bool = True
    effective_from: datetime | None = None
    effective_to: datetime | None = None


@dataclass(frozen=True, slots=True)
class PermissionRuleData:
    id: int
    api_key_id: str
    pool_group: str
    allowed_platforms: list[str]
    allowed_account_ids: list[str] | None
    selection_strategy: SelectionStrategy
    priority: int
    is_enabled: bool
    effective_from: datetime | None
    effective_to: datetime | None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    warnings: list[str] = field(default_factory=list)


def validate_rule(payload: PermissionRuleInput, supported_platforms: Iterable[str]) -> None:
    if not payload.pool_group or not payload.pool_group.strip():
        raise InvalidPermissionError("Pool group must not be empty", param="poolGroup")

    platforms = [entry.strip().lower() for entry in payload.allowed_platforms if entry and entry.strip()]
    if not platforms:
        raise InvalidPermissionError("At least one platform is required", param="allowedPlatforms")
    allowed = {entry.lower() for entry in supported_platforms} | {WILDCARD_PLATFORM}
    unknown = sorted({entry for entry in platforms if entry not in allowed})
    if unknown:
        raise InvalidPermissionError(f"Unsupported platforms: {', '.join(unknown)}", param="allowedPlatforms")

    strategy = payload.selection_strategy
    if not isinstance(strategy, SelectionStrategy):
        try:
            SelectionStrategy((strategy or "").strip().lower())
        except ValueError as exc:
            raise InvalidPermissionError(
                f"Unsupported selection strategy: {strategy}",
                param="selectionStrategy",
            ) from exc

    if not MIN_RULE_PRIORITY <= payload.priority <= MAX_RULE_PRIORITY:
        raise InvalidPermissionError(
            f"Priority must be between {MIN_RULE_PRIORITY} and {MAX_RULE_PRIORITY}",
            param="priority",
        )

    effective_from = optional_utc_naive(payload.effective_from)
    effective_to = optional_utc_naive(payload.effective_to)
    if effective_from is not None and effective_to is not None and effective_from > effective_to:
        raise InvalidPermissionError("effectiveFrom must not be after effectiveTo", param="effectiveFrom")


def build_rule(key_id: str, payload: PermissionRuleInput) -> PermissionRule:
    return PermissionRule(
        api_key_id=key_id,
        pool_group=payload.pool_group.strip(),
        allowed_platforms=list(payload.allowed_platforms),
        allowed_account_ids=list(payload.allowed_account_ids) if payload.allowed_account_ids else None,
        selection_strategy=coerce_selection_strategy(payload.selection_strategy),
        priority=payload.priority,
        is_enabled=payload.is_enabled,
        effective_from=optional_utc_naive(payload.effective_from),
        effective_to=optional_utc_naive(payload.effective_to),
    )


def rule_to_data(rule: PermissionRule, *, warnings: Sequence[str] = ()) -> PermissionRuleData:
    return PermissionRuleData(
        id=rule.id,
        api_key_id=rule.api_key_id,
        pool_group=rule.pool_group,
        allowed_platforms=list(rule.allowed_platforms or []),
        allowed_account_ids=list(rule.allowed_account_ids) if rule.allowed_account_ids else None,
        selection_strategy=rule.selection_strategy,
        priority=rule.priority,
        is_enabled=rule.is_enabled,
        effective_from=rule.effective_from,
        effective_to=rule.effective_to,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
        warnings=list(warnings),
    )


class PermissionsService:
    def __init__(
        self,
        repository: PermissionsRepository,
        api_keys: ApiKeysRepository,
        accounts: AccountsRepository,
        *,
        supported_platforms: Iterable[str],
        on_change: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._repository = repository
        self._api_keys = api_keys
        self._accounts = accounts
        self._supported_platforms = tuple(supported_platforms)
        self._on_change = on_change

    async def get_permissions(self, key_id: str) -> list[PermissionRuleData]:
        await self._require_key(key_id)
        return [rule_to_data(rule) for rule in await self._repository.list_for_key(key_id)]

    async def add_permission(self, key_id: str, payload: PermissionRuleInput) -> PermissionRuleData:
        await self._require_key(key_id)
        validate_rule(payload, self._supported_platforms)
        pool_group = payload.pool_group.strip()
        if await self._repository.get(key_id, pool_group) is not None:
            raise DuplicatePermissionError(f"Permission for pool group '{pool_group}' already exists")

        warnings = await self._pool_warnings([pool_group])
        rule = await self._repository.add(build_rule(key_id, payload))
        logger.info(
            "permission_added key=%s pool_group=%s strategy=%s priority=%s",
            key_id,
            rule.pool_group,
            rule.selection_strategy.value,
            rule.priority,
        )
        get_metrics().observe_permission_mutation(action="add")
        await self._notify(key_id)
        return rule_to_data(rule, warnings=warnings)

    async def remove_permission(self, key_id: str, pool_group: str) -> bool:
        await self._require_key(key_id)
        removed = await self._repository.delete(key_id, pool_group.strip())
        if removed:
            logger.info("permission_removed key=%s pool_group=%s", key_id, pool_group)
            get_metrics().observe_permission_mutation(action="remove")
            await self._notify(key_id)
        return removed

    async def batch_replace_permissions(
        self,
        key_id: str,
        payloads: Sequence[PermissionRuleInput],
    ) -> list[PermissionRuleData]:
        await self._require_key(key_id)
        seen: set[str] = set()
        for payload in payloads:
            validate_rule(payload, self._supported_platforms)
            pool_group = payload.pool_group.strip()
            if pool_group in seen:
                raise DuplicatePermissionError(f"Pool group '{pool_group}' appears more than once")
            seen.add(pool_group)

        warnings = await self._pool_warnings(sorted(seen))
        rules = await self._repository.replace_for_key(key_id, [build_rule(key_id, payload) for payload in payloads])
        logger.info("permissions_replaced key=%s count=%s", key_id, len(rules))
        get_metrics().observe_permission_mutation(action="replace")
        await self._notify(key_id)
        return [rule_to_data(rule, warnings=warnings) for rule in rules]

    async def _require_key(self, key_id: str) -> None:
        if not await self._api_keys.exists(key_id):
            raise ApiKeyNotFoundError(f"API key '{key_id}' not found")

    async def _pool_warnings(self, pool_groups: Sequence[str]) -> list[str]:
        warnings: list[str] = []
        for pool_group in pool_groups:
            if await self._accounts.count_enabled_in_pool(pool_group) == 0:
                logger.warning("permission_pool_empty pool_group=%s", pool_group)
                warnings.append(f"Pool group '{pool_group}' has no enabled accounts")
        return warnings

    async def _notify(self, key_id: str) -> None:
        if self._on_change is not None:
            await self._on_change(key_id)
