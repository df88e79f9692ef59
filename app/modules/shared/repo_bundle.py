from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import AsyncContextManager

from app.modules.accounts.repository import AccountsRepository
from app.modules.api_keys.repository import ApiKeysRepository
from app.modules.groups.repository import GroupsRepository
from app.modules.health.repository import KeyAccountMappingsRepository
from app.modules.permissions.repository import PermissionsRepository


@dataclass(slots=True)
class RouterRepositories:
    accounts: AccountsRepository
    api_keys: ApiKeysRepository
    permissions: PermissionsRepository
    key_mappings: KeyAccountMappingsRepository
    groups: GroupsRepository


RouterRepoFactory = Callable[[], AsyncContextManager[RouterRepositories]]
