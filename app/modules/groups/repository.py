from __future__ import annotations

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils.time import utcnow
from app.db.models import AccountGroup, GroupAccountMapping, GroupStatistics
from app.modules.health.repository import mapping_defaults


class GroupsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, group_id: int) -> AccountGroup | None:
        result = await self._session.execute(
            select(AccountGroup).where(AccountGroup.id == group_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> AccountGroup | None:
        result = await self._session.execute(
            select(AccountGroup).where(func.lower(AccountGroup.name) == name.strip().lower())
        )
        return result.scalar_one_or_none()

    async def list_groups(self, *, enabled_only: bool = False) -> list[AccountGroup]:
        stmt = select(AccountGroup).order_by(AccountGroup.priority, AccountGroup.name)
        if enabled_only:
            stmt = stmt.where(AccountGroup.is_enabled.is_(True))
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def add(self, group: AccountGroup) -> AccountGroup:
        self._session.add(group)
        await self._session.flush()
        self._session.add(GroupStatistics(**_statistics_defaults(group.id)))
        await self._session.commit()
        await self._session.refresh(group)
        return group

    async def save(self, *rows: object) -> None:
        for row in rows:
            self._session.add(row)
        await self._session.commit()
        for row in rows:
            await self._session.refresh(row)

    async def delete(self, group_id: int) -> bool:
        await self._session.execute(delete(GroupAccountMapping).where(GroupAccountMapping.group_id == group_id))
        await self._session.execute(delete(GroupStatistics).where(GroupStatistics.group_id == group_id))
        result = await self._session.execute(
            delete(AccountGroup).where(AccountGroup.id == group_id).returning(AccountGroup.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def get_statistics(self, group_id: int) -> GroupStatistics:
        result = await self._session.execute(
            select(GroupStatistics)
            .where(GroupStatistics.group_id == group_id)
            .execution_options(populate_existing=True)
        )
        stats = result.scalar_one_or_none()
        if stats is None:
            stats = GroupStatistics(**_statistics_defaults(group_id))
            self._session.add(stats)
            await self._session.flush()
        return stats

    async def get_mapping(self, group_id: int, account_id: str) -> GroupAccountMapping | None:
        result = await self._session.execute(
            select(GroupAccountMapping)
            .where(GroupAccountMapping.group_id == group_id)
            .where(GroupAccountMapping.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_mappings(self, group_id: int) -> list[GroupAccountMapping]:
        result = await self._session.execute(
            select(GroupAccountMapping)
            .where(GroupAccountMapping.group_id == group_id)
            .order_by(
                GroupAccountMapping.order,
                GroupAccountMapping.is_primary.desc(),
                GroupAccountMapping.weight.desc(),
                GroupAccountMapping.id,
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def add_mapping(
        self,
        group_id: int,
        account_id: str,
        *,
        weight: int,
        order: int,
        is_primary: bool,
    ) -> GroupAccountMapping:
        if is_primary:
            await self._clear_primary(group_id)
        values = mapping_defaults(weight)
        values.update(order=order, is_primary=is_primary)
        mapping = GroupAccountMapping(group_id=group_id, account_id=account_id, **values)
        self._session.add(mapping)
        await self._session.execute(
            update(AccountGroup)
            .where(AccountGroup.id == group_id)
            .values(account_count=AccountGroup.account_count + 1)
        )
        await self._session.commit()
        await self._session.refresh(mapping)
        return mapping

    async def update_mapping(
        self,
        mapping: GroupAccountMapping,
        *,
        weight: int | None = None,
        order: int | None = None,
        is_primary: bool | None = None,
        is_enabled: bool | None = None,
    ) -> GroupAccountMapping:
        if is_primary:
            await self._clear_primary(mapping.group_id, keep_id=mapping.id)
        if weight is not None:
            mapping.weight = weight
        if order is not None:
            mapping.order = order
        if is_primary is not None:
            mapping.is_primary = is_primary
        if is_enabled is not None:
            mapping.is_enabled = is_enabled
        self._session.add(mapping)
        await self._session.commit()
        await self._session.refresh(mapping)
        return mapping

    async def delete_mapping(self, group_id: int, account_id: str) -> bool:
        result = await self._session.execute(
            delete(GroupAccountMapping)
            .where(GroupAccountMapping.group_id == group_id)
            .where(GroupAccountMapping.account_id == account_id)
            .returning(GroupAccountMapping.id)
        )
        removed = result.scalar_one_or_none() is not None
        if removed:
            remaining = AccountGroup.account_count - 1
            await self._session.execute(
                update(AccountGroup)
                .where(AccountGroup.id == group_id)
                .values(account_count=case((remaining < 0, 0), else_=remaining))
            )
        await self._session.commit()
        return removed

    async def _clear_primary(self, group_id: int, *, keep_id: int | None = None) -> None:
        stmt = (
            update(GroupAccountMapping)
            .where(GroupAccountMapping.group_id == group_id)
            .where(GroupAccountMapping.is_primary.is_(True))
        )
        if keep_id is not None:
            stmt = stmt.where(GroupAccountMapping.id != keep_id)
        await self._session.execute(stmt.values(is_primary=False))


def _statistics_defaults(group_id: int) -> dict[str, object]:
    return {
        "group_id": group_id,
        "total_requests": 0,
        "successful_requests": 0,
        "failed_requests": 0,
        "total_cost": 0.0,
        "average_response_time_ms": 0.0,
        "current_connections": 0,
        "peak_connections": 0,
        "started_at": utcnow(),
    }
