from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from app.core.balancer.availability import AvailabilityChecker
from app.core.balancer.eligibility import is_api_key_valid
from app.core.balancer.health import mapping_ineligibility_reason
from app.core.balancer.rules import can_access_account, matching_rules
from app.core.utils.time import utcnow
from app.db.models import Account, KeyAccountMapping, PermissionRule
from app.modules.shared.repo_bundle import RouterRepositories

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Resolution:
    accounts: list[Account] = field(default_factory=list)
    top_rule: PermissionRule | None = None
    mappings: dict[str, KeyAccountMapping] = field(default_factory=dict)


class PermissionResolver:
    def __init__(self, repos: RouterRepositories, availability: AvailabilityChecker) -> None:
        self._repos = repos
        self._availability = availability

    async def resolve(self, key_id: str, platform: str, *, now: datetime | None = None) -> Resolution:
        current = now if now is not None else utcnow()
        api_key = await self._repos.api_keys.get(key_id)
        if not is_api_key_valid(api_key, now=current):
            logger.debug("resolve_skipped key=%s reason=key_invalid", key_id)
            return Resolution()

        rules = matching_rules(await self._repos.permissions.list_for_key(key_id), platform, now=current)
        if not rules:
            return Resolution()

        ranked: list[tuple[int, Account]] = []
        seen: set[str] = set()
        for rule in rules:
            for account in await self._repos.accounts.list_by_pool(rule.pool_group, platform):
                account_key = account.id.lower()
                if account_key in seen or not can_access_account(rule, account.id):
                    continue
                if not await self._availability.is_available(account):
                    continue
                seen.add(account_key)
                ranked.append((rule.priority, account))

        mappings = await self._repos.key_mappings.map_for_key(key_id, [account.id for _, account in ranked])
        eligible: list[tuple[int, Account]] = []
        for rule_priority, account in ranked:
            mapping = mappings.get(account.id)
            if mapping is None:
                eligible.append((rule_priority, account))
                continue
            reason = mapping_ineligibility_reason(mapping, now=current)
            if reason is None:
                eligible.append((rule_priority, account))
            else:
                logger.debug("resolve_excluded key=%s account=%s reason=%s", key_id, account.id, reason)

        eligible.sort(key=lambda item: (item[0], item[1].priority, -item[1].weight))
        return Resolution(
            accounts=[account for _, account in eligible],
            top_rule=rules[0],
            mappings=mappings,
        )

    async def get_allowed_accounts(self, key_id: str, platform: str, *, now: datetime | None = None) -> list[Account]:
        return (await self.resolve(key_id, platform, now=now)).accounts

    async def has_permission(
        self,
        key_id: str,
        account_id: str,
        platform: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        target = (account_id or "").strip().lower()
        if not target:
            return False
        rules = matching_rules(await self._repos.permissions.list_for_key(key_id), platform, now=now)
        for rule in rules:
            if not can_access_account(rule, account_id):
                continue
            accounts = await self._repos.accounts.list_by_pool(rule.pool_group, platform)
            if any(account.id.lower() == target for account in accounts):
                return True
        return False
