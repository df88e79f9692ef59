from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.utils.time import utcnow
from app.db.models import Account, AccountGroup, AccountStatus, GroupAccountMapping


class AccountsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_account(self, account_id: str) -> Account | None:
        return await self._session.get(Account, account_id)

    async def get_accounts(self, account_ids: Sequence[str]) -> dict[str, Account]:
        ids = [value for value in account_ids if value]
        if not ids:
            return {}
        result = await self._session.execute(select(Account).where(Account.id.in_(ids)))
        return {account.id: account for account in result.scalars().all()}

    async def list_accounts(self) -> list[Account]:
        result = await self._session.execute(select(Account).order_by(Account.priority, Account.id))
        return list(result.scalars().all())

    async def list_by_pool(self, pool_group: str, platform: str) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.pool_group == pool_group)
            .where(func.lower(Account.platform) == (platform or "").strip().lower())
            .order_by(Account.priority, Account.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_enabled_in_pool(self, pool_group: str) -> int:
        result = await self._session.execute(
            select(func.count(Account.id)).where(Account.pool_group == pool_group).where(Account.is_enabled.is_(True))
        )
        return int(result.scalar_one() or 0)

    async def upsert(self, account: Account) -> Account:
        existing = await self._session.get(Account, account.id)
        if existing:
            _apply_account_updates(existing, account)
            await self._session.commit()
            await self._session.refresh(existing)
            return existing

        self._session.add(account)
        await self._session.commit()
        await self._session.refresh(account)
        return account

    async def update_status(
        self,
        account_id: str,
        status: AccountStatus,
        rate_limited_until: datetime | None = None,
    ) -> bool:
        # `rate_limited_until` only means something while the account is RATE_LIMITED.
        normalized_until = rate_limited_until if status == AccountStatus.RATE_LIMITED else None
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(status=status, rate_limited_until=normalized_until)
            .returning(Account.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def mark_used(self, account_id: str, *, now: datetime | None = None) -> bool:
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(usage_count=Account.usage_count + 1, last_used_at=now or utcnow())
            .returning(Account.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def delete(self, account_id: str) -> bool:
        # Group mappings cascade with the account; keep each group's account_count in step.
        member_groups = select(GroupAccountMapping.group_id).where(GroupAccountMapping.account_id == account_id)
        remaining = AccountGroup.account_count - 1
        await self._session.execute(
            update(AccountGroup)
            .where(AccountGroup.id.in_(member_groups))
            .values(account_count=case((remaining < 0, 0), else_=remaining))
        )
        result = await self._session.execute(delete(Account).where(Account.id == account_id).returning(Account.id))
        await self._session.commit()
        return result.scalar_one_or_none() is not None


def _apply_account_updates(target: Account, source: Account) -> None:
    target.name = source.name
    target.platform = source.platform
    target.pool_group = source.pool_group
    if source.priority is not None:
        target.priority = source.priority
    if source.weight is not None:
        target.weight = source.weight
    if source.is_enabled is not None:
        target.is_enabled = source.is_enabled
    if source.status is not None:
        target.status = source.status
    target.rate_limited_until = source.rate_limited_until if source.status == AccountStatus.RATE_LIMITED else None
