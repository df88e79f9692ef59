from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert

from app.db.models import HealthStatus, KeyAccountMapping


def mapping_defaults(weight: int = 1) -> dict[str, object]:
    return {
        "weight": weight,
        "order": 0,
        "is_primary": False,
        "is_enabled": True,
        "current_connections": 0,
        "total_usage_count": 0,
        "successful_requests": 0,
        "failed_requests": 0,
        "consecutive_failures": 0,
        "average_response_time_ms": 0.0,
        "health_status": HealthStatus.UNKNOWN,
    }


class KeyAccountMappingsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key_id: str, account_id: str) -> KeyAccountMapping | None:
        result = await self._session.execute(
            select(KeyAccountMapping)
            .where(KeyAccountMapping.api_key_id == key_id)
            .where(KeyAccountMapping.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_key(self, key_id: str) -> list[KeyAccountMapping]:
        result = await self._session.execute(
            select(KeyAccountMapping)
            .where(KeyAccountMapping.api_key_id == key_id)
            .order_by(KeyAccountMapping.order, KeyAccountMapping.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def map_for_key(self, key_id: str, account_ids: Sequence[str]) -> dict[str, KeyAccountMapping]:
        ids = [value for value in account_ids if value]
        if not ids:
            return {}
        result = await self._session.execute(
            select(KeyAccountMapping)
            .where(KeyAccountMapping.api_key_id == key_id)
            .where(KeyAccountMapping.account_id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {mapping.account_id: mapping for mapping in result.scalars().all()}

    async def ensure(self, key_id: str, account_id: str, *, weight: int = 1) -> KeyAccountMapping:
        statement = self._build_insert_ignore_statement(key_id, account_id, weight)
        await self._session.execute(statement)
        await self._session.commit()
        mapping = await self.get(key_id, account_id)
        if mapping is None:
            raise RuntimeError(f"KeyAccountMapping ensure failed for key={key_id!r} account={account_id!r}")
        return mapping

    async def save(self, mapping: KeyAccountMapping) -> KeyAccountMapping:
        self._session.add(mapping)
        await self._session.commit()
        await self._session.refresh(mapping)
        return mapping

    async def adjust_connections(self, key_id: str, account_id: str, delta: int) -> bool:
        adjusted = KeyAccountMapping.current_connections + delta
        result = await self._session.execute(
            update(KeyAccountMapping)
            .where(KeyAccountMapping.api_key_id == key_id)
            .where(KeyAccountMapping.account_id == account_id)
            .values(current_connections=case((adjusted < 0, 0), else_=adjusted))
            .returning(KeyAccountMapping.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def delete(self, key_id: str, account_id: str) -> bool:
        result = await self._session.execute(
            delete(KeyAccountMapping)
            .where(KeyAccountMapping.api_key_id == key_id)
            .where(KeyAccountMapping.account_id == account_id)
            .returning(KeyAccountMapping.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    def _build_insert_ignore_statement(self, key_id: str, account_id: str, weight: int) -> Insert:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            raise RuntimeError(f"KeyAccountMapping insert unsupported for dialect={dialect!r}")
        statement = insert_fn(KeyAccountMapping).values(
            api_key_id=key_id,
            account_id=account_id,
            **mapping_defaults(weight),
        )
        return statement.on_conflict_do_nothing(index_elements=["api_key_id", "account_id"])
