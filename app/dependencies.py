from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.balancer.availability import AccountStatusAvailability
from app.core.config.settings import get_settings
from app.db.session import SessionLocal, _safe_close, _safe_rollback, get_session
from app.modules.accounts.repository import AccountsRepository
from app.modules.api_keys.repository import ApiKeysRepository
from app.modules.groups.balancer import GroupLoadBalancer
from app.modules.groups.repository import GroupsRepository
from app.modules.groups.service import GroupsService
from app.modules.health.repository import KeyAccountMappingsRepository
from app.modules.health.service import HealthService
from app.modules.permissions.repository import PermissionsRepository
from app.modules.permissions.resolver import PermissionResolver
from app.modules.permissions.selector import AccountSelector
from app.modules.permissions.service import PermissionsService
from app.modules.shared.repo_bundle import RouterRepositories


@dataclass(slots=True)
class PermissionsContext:
    session: AsyncSession
    service: PermissionsService
    resolver: PermissionResolver


@dataclass(slots=True)
class SelectionContext:
    selector: AccountSelector


@dataclass(slots=True)
class HealthContext:
    service: HealthService


@dataclass(slots=True)
class GroupsContext:
    session: AsyncSession
    service: GroupsService
    balancer: GroupLoadBalancer


@dataclass(slots=True)
class AdminContext:
    session: AsyncSession
    accounts: AccountsRepository
    api_keys: ApiKeysRepository


def _repositories(session: AsyncSession) -> RouterRepositories:
    return RouterRepositories(
        accounts=AccountsRepository(session),
        api_keys=ApiKeysRepository(session),
        permissions=PermissionsRepository(session),
        key_mappings=KeyAccountMappingsRepository(session),
        groups=GroupsRepository(session),
    )


@asynccontextmanager
async def router_repo_context() -> AsyncIterator[RouterRepositories]:
    session = SessionLocal()
    try:
        yield _repositories(session)
    except BaseException:
        await _safe_rollback(session)
        raise
    finally:
        if session.in_transaction():
            await _safe_rollback(session)
        await _safe_close(session)


def get_account_selector(request: Request) -> AccountSelector:
    selector = getattr(request.app.state, "account_selector", None)
    if selector is None:
        selector = AccountSelector(repo_factory=router_repo_context)
        request.app.state.account_selector = selector
    return selector


def get_health_service(request: Request) -> HealthService:
    service = getattr(request.app.state, "health_service", None)
    if service is None:
        service = HealthService(repo_factory=router_repo_context)
        request.app.state.health_service = service
    return service


def get_group_balancer(request: Request) -> GroupLoadBalancer:
    balancer = getattr(request.app.state, "group_balancer", None)
    if balancer is None:
        balancer = GroupLoadBalancer(repo_factory=router_repo_context)
        request.app.state.group_balancer = balancer
    return balancer


def get_permissions_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> PermissionsContext:
    repos = _repositories(session)
    selector = get_account_selector(request)
    service = PermissionsService(
        repos.permissions,
        repos.api_keys,
        repos.accounts,
        supported_platforms=get_settings().supported_platforms,
        on_change=selector.invalidate_key,
    )
    resolver = PermissionResolver(repos, AccountStatusAvailability())
    return PermissionsContext(session=session, service=service, resolver=resolver)


def get_selection_context(request: Request) -> SelectionContext:
    return SelectionContext(selector=get_account_selector(request))


def get_health_context(request: Request) -> HealthContext:
    return HealthContext(service=get_health_service(request))


def get_groups_context(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> GroupsContext:
    service = GroupsService(GroupsRepository(session), AccountsRepository(session))
    return GroupsContext(session=session, service=service, balancer=get_group_balancer(request))


def get_admin_context(
    session: AsyncSession = Depends(get_session),
) -> AdminContext:
    return AdminContext(
        session=session,
        accounts=AccountsRepository(session),
        api_keys=ApiKeysRepository(session),
    )
