from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from app.core.utils.time import utcnow

WILDCARD_PLATFORM = "all"


class RuleLike(Protocol):
    pool_group: str
    allowed_platforms: list[str]
    allowed_account_ids: list[str] | None
    priority: int
    is_enabled: bool
    effective_from: datetime | None
    effective_to: datetime | None


def is_effective(rule: RuleLike, now: datetime | None = None) -> bool:
    """Enabled and inside the inclusive ``[effective_from, effective_to]`` window."""
    if not rule.is_enabled:
        return False
    current = now if now is not None else utcnow()
    if rule.effective_from is not None and current < rule.effective_from:
        return False
    if rule.effective_to is not None and current > rule.effective_to:
        return False
    return True


def can_access_platform(rule: RuleLike, platform: str) -> bool:
    platforms = [entry.strip().lower() for entry in (rule.allowed_platforms or []) if entry]
    if not platforms:
        return False
    if WILDCARD_PLATFORM in platforms:
        return True
    return (platform or "").strip().lower() in platforms


def can_access_account(rule: RuleLike, account_id: str) -> bool:
    allowed = rule.allowed_account_ids
    if not allowed:
        return True
    target = (account_id or "").strip().lower()
    return any(entry.strip().lower() == target for entry in allowed if entry)


def matching_rules(rules: Iterable[RuleLike], platform: str, *, now: datetime | None = None) -> list[RuleLike]:
    """Effective rules granting ``platform``, highest precedence first."""
    current = now if now is not None else utcnow()
    matched = [rule for rule in rules if is_effective(rule, current) and can_access_platform(rule, platform)]
    matched.sort(key=lambda rule: (rule.priority, rule.pool_group))
    return matched
