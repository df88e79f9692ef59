from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.core.utils.time import utcnow
from app.db.models import AccountStatus


class AccountLike(Protocol):
    id: str
    is_enabled: bool
    status: AccountStatus
    rate_limited_until: datetime | None


class ApiKeyLike(Protocol):
    is_enabled: bool
    expires_at: datetime | None


def account_ineligibility_reason(account: AccountLike | None, *, now: datetime | None = None) -> str | None:
    if account is None:
        return "missing"
    if not account.is_enabled:
        return "disabled"
    if account.status == AccountStatus.DEACTIVATED:
        return "deactivated"
    if account.status == AccountStatus.PAUSED:
        return "paused"

    current = now if now is not None else utcnow()
    if account.rate_limited_until is not None and current < account.rate_limited_until:
        return "rate_limited"
    if account.status == AccountStatus.RATE_LIMITED and account.rate_limited_until is None:
        return "rate_limited"

    return None


def is_account_usable(account: AccountLike | None, *, now: datetime | None = None) -> bool:
    return account_ineligibility_reason(account, now=now) is None


def is_api_key_valid(api_key: ApiKeyLike | None, *, now: datetime | None = None) -> bool:
    if api_key is None or not api_key.is_enabled:
        return False
    if api_key.expires_at is None:
        return True
    current = now if now is not None else utcnow()
    return current < api_key.expires_at
