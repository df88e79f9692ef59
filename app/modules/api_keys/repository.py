from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import ApiKey


class ApiKeysRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key_id: str) -> ApiKey | None:
        return await self._session.get(ApiKey, key_id)

    async def exists(self, key_id: str) -> bool:
        result = await self._session.execute(select(ApiKey.id).where(ApiKey.id == key_id))
        return result.scalar_one_or_none() is not None

    async def list_keys(self) -> list[ApiKey]:
        result = await self._session.execute(select(ApiKey).order_by(ApiKey.created_at, ApiKey.id))
        return list(result.scalars().all())

    async def upsert(self, api_key: ApiKey) -> ApiKey:
        existing = await self._session.get(ApiKey, api_key.id)
        if existing:
            existing.name = api_key.name
            if api_key.is_enabled is not None:
                existing.is_enabled = api_key.is_enabled
            existing.expires_at = api_key.expires_at
            await self._session.commit()
            await self._session.refresh(existing)
            return existing
        self._session.add(api_key)
        await self._session.commit()
        await self._session.refresh(api_key)
        return api_key

    async def delete(self, key_id: str) -> bool:
        result = await self._session.execute(delete(ApiKey).where(ApiKey.id == key_id).returning(ApiKey.id))
        await self._session.commit()
        return result.scalar_one_or_none() is not None
