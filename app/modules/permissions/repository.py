from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import PermissionRule


def _normalize_ids(values: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in values or ():
        value = raw.strip()
        key = value.lower()
        if not value or key in seen:
            continue
        seen.add(key)
        normalized.append(value)
    return normalized


def _normalize_platforms(values: Sequence[str]) -> list[str]:
    return [value.lower() for value in _normalize_ids(values)]


class PermissionsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_key(self, key_id: str) -> list[PermissionRule]:
        result = await self._session.execute(
            select(PermissionRule)
            .where(PermissionRule.api_key_id == key_id)
            .order_by(PermissionRule.priority, PermissionRule.pool_group)
        )
        return list(result.scalars().all())

    async def get(self, key_id: str, pool_group: str) -> PermissionRule | None:
        result = await self._session.execute(
            select(PermissionRule)
            .where(PermissionRule.api_key_id == key_id)
            .where(PermissionRule.pool_group == pool_group)
        )
        return result.scalar_one_or_none()

    async def add(self, rule: PermissionRule) -> PermissionRule:
        _normalize_rule(rule)
        self._session.add(rule)
        await self._session.commit()
        await self._session.refresh(rule)
        return rule

    async def delete(self, key_id: str, pool_group: str) -> bool:
        result = await self._session.execute(
            delete(PermissionRule)
            .where(PermissionRule.api_key_id == key_id)
            .where(PermissionRule.pool_group == pool_group)
            .returning(PermissionRule.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def replace_for_key(self, key_id: str, rules: Sequence[PermissionRule]) -> list[PermissionRule]:
        """Swap the key's whole rule set in one transaction."""
        try:
            await self._session.execute(delete(PermissionRule).where(PermissionRule.api_key_id == key_id))
            for rule in rules:
                rule.api_key_id = key_id
                _normalize_rule(rule)
                self._session.add(rule)
            await self._session.commit()
        except BaseException:
            await self._session.rollback()
            raise
        return await self.list_for_key(key_id)


def _normalize_rule(rule: PermissionRule) -> None:
    rule.pool_group = rule.pool_group.strip()
    rule.allowed_platforms = _normalize_platforms(rule.allowed_platforms or [])
    account_ids = _normalize_ids(rule.allowed_account_ids)
    rule.allowed_account_ids = account_ids or None
