from __future__ import annotations

import pytest

from app.core.exceptions import ApiKeyNotFoundError, DuplicatePermissionError, InvalidPermissionError
from app.db.models import Account, ApiKey, SelectionStrategy
from app.db.session import SessionLocal
from app.modules.accounts.repository import AccountsRepository
from app.modules.api_keys.repository import ApiKeysRepository
from app.modules.permissions.repository import PermissionsRepository
from app.modules.permissions.service import PermissionRuleInput, PermissionsService

pytestmark = pytest.mark.integration

PLATFORMS = ("claude", "gemini", "openai")


def _service(session, on_change=None) -> PermissionsService:
    return PermissionsService(
        PermissionsRepository(session),
        ApiKeysRepository(session),
        AccountsRepository(session),
        supported_platforms=PLATFORMS,
        on_change=on_change,
    )


async def _seed_key(session, key_id: str = "key-1") -> None:
    await ApiKeysRepository(session).upsert(ApiKey(id=key_id, name=key_id, is_enabled=True))


async def _seed_account(session, account_id: str, pool_group: str) -> None:
    await AccountsRepository(session).upsert(
        Account(id=account_id, name=account_id, platform="claude", pool_group=pool_group, priority=1, weight=1)
    )


@pytest.mark.asyncio
async def test_add_permission_normalizes_and_persists(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        await _seed_account(session, "acc-1", "main")
        service = _service(session)

        created = await service.add_permission(
            "key-1",
            PermissionRuleInput(
                pool_group=" main ",
                allowed_platforms=["Claude", "claude", "gemini"],
                selection_strategy="round_robin",
                priority=10,
            ),
        )

        assert created.pool_group == "main"
        assert created.allowed_platforms == ["claude", "gemini"]
        assert created.selection_strategy == SelectionStrategy.ROUND_ROBIN
        assert created.warnings == []

        listed = await service.get_permissions("key-1")
        assert [rule.pool_group for rule in listed] == ["main"]


@pytest.mark.asyncio
async def test_add_permission_warns_on_empty_pool(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        created = await _service(session).add_permission(
            "key-1",
            PermissionRuleInput(pool_group="ghost", allowed_platforms=["claude"]),
        )
        assert created.warnings == ["Pool group 'ghost' has no enabled accounts"]


@pytest.mark.asyncio
async def test_add_permission_rejects_unknown_key(db_setup):
    async with SessionLocal() as session:
        with pytest.raises(ApiKeyNotFoundError):
            await _service(session).add_permission(
                "missing",
                PermissionRuleInput(pool_group="main", allowed_platforms=["claude"]),
            )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        PermissionRuleInput(pool_group="", allowed_platforms=["claude"]),
        PermissionRuleInput(pool_group="main", allowed_platforms=[]),
        PermissionRuleInput(pool_group="main", allowed_platforms=["mainframe"]),
        PermissionRuleInput(pool_group="main", allowed_platforms=["claude"], selection_strategy="fastest"),
        PermissionRuleInput(pool_group="main", allowed_platforms=["claude"], priority=101),
    ],
)
async def test_add_permission_validates_payload(db_setup, payload):
    async with SessionLocal() as session:
        await _seed_key(session)
        with pytest.raises(InvalidPermissionError):
            await _service(session).add_permission("key-1", payload)


@pytest.mark.asyncio
async def test_add_permission_accepts_wildcard_platform(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        created = await _service(session).add_permission(
            "key-1",
            PermissionRuleInput(pool_group="main", allowed_platforms=["all"]),
        )
        assert created.allowed_platforms == ["all"]


@pytest.mark.asyncio
async def test_duplicate_pool_group_conflicts(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        service = _service(session)
        payload = PermissionRuleInput(pool_group="main", allowed_platforms=["claude"])
        await service.add_permission("key-1", payload)
        with pytest.raises(DuplicatePermissionError):
            await service.add_permission("key-1", payload)


@pytest.mark.asyncio
async def test_remove_permission(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        service = _service(session)
        await service.add_permission("key-1", PermissionRuleInput(pool_group="main", allowed_platforms=["claude"]))

        assert await service.remove_permission("key-1", "main") is True
        assert await service.remove_permission("key-1", "main") is False
        assert await service.get_permissions("key-1") == []


@pytest.mark.asyncio
async def test_batch_replace_swaps_whole_rule_set(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        service = _service(session)
        await service.add_permission("key-1", PermissionRuleInput(pool_group="old", allowed_platforms=["claude"]))

        replaced = await service.batch_replace_permissions(
            "key-1",
            [
                PermissionRuleInput(pool_group="b", allowed_platforms=["claude"], priority=20),
                PermissionRuleInput(pool_group="a", allowed_platforms=["gemini"], priority=10),
            ],
        )

        assert [rule.pool_group for rule in replaced] == ["a", "b"]
        assert {rule.pool_group for rule in await service.get_permissions("key-1")} == {"a", "b"}


@pytest.mark.asyncio
async def test_batch_replace_rejects_duplicates_and_keeps_existing(db_setup):
    async with SessionLocal() as session:
        await _seed_key(session)
        service = _service(session)
        await service.add_permission("key-1", PermissionRuleInput(pool_group="old", allowed_platforms=["claude"]))

        with pytest.raises(DuplicatePermissionError):
            await service.batch_replace_permissions(
                "key-1",
                [
                    PermissionRuleInput(pool_group="dup", allowed_platforms=["claude"]),
                    PermissionRuleInput(pool_group="dup", allowed_platforms=["gemini"]),
                ],
            )

        assert [rule.pool_group for rule in await service.get_permissions("key-1")] == ["old"]


@pytest.mark.asyncio
async def test_mutations_notify_listener(db_setup):
    notified: list[str] = []

    async def _on_change(key_id: str) -> None:
        notified.append(key_id)

    async with SessionLocal() as session:
        await _seed_key(session)
        service = _service(session, on_change=_on_change)
        await service.add_permission("key-1", PermissionRuleInput(pool_group="main", allowed_platforms=["claude"]))
        await service.batch_replace_permissions("key-1", [])
        await service.remove_permission("key-1", "main")

    assert notified == ["key-1", "key-1"]
