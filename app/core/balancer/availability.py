from __future__ import annotations

from typing import Protocol

from app.core.balancer.eligibility import AccountLike, is_account_usable


class AvailabilityChecker(Protocol):
    async def is_available(self, account: AccountLike) -> bool: ...


class AccountStatusAvailability:
    """Default checker: an account is usable when enabled, active and past any rate-limit window."""

    async def is_available(self, account: AccountLike) -> bool:
        return is_account_usable(account)
