from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest

from app.core.balancer.rules import can_access_account, can_access_platform, is_effective, matching_rules

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, 12, 0, 0)


@dataclass
class _Rule:
    pool_group: str = "default"
    allowed_platforms: list[str] = field(default_factory=lambda: ["claude"])
    allowed_account_ids: list[str] | None = None
    priority: int = 50
    is_enabled: bool = True
    effective_from: datetime | None = None
    effective_to: datetime | None = None


def test_disabled_rule_is_not_effective():
    assert not is_effective(_Rule(is_enabled=False), NOW)


def test_effective_window_is_inclusive():
    rule = _Rule(effective_from=NOW, effective_to=NOW + timedelta(hours=1))
    assert is_effective(rule, NOW)
    assert is_effective(rule, NOW + timedelta(hours=1))
    assert not is_effective(rule, NOW - timedelta(seconds=1))
    assert not is_effective(rule, NOW + timedelta(hours=1, seconds=1))


def test_open_ended_windows():
    assert is_effective(_Rule(effective_from=NOW - timedelta(days=1)), NOW)
    assert is_effective(_Rule(effective_to=NOW + timedelta(days=1)), NOW)
    assert not is_effective(_Rule(effective_from=NOW + timedelta(days=1)), NOW)


def test_platform_match_is_case_insensitive():
    rule = _Rule(allowed_platforms=["Claude", "gemini"])
    assert can_access_platform(rule, "claude")
    assert can_access_platform(rule, "GEMINI")
    assert not can_access_platform(rule, "openai")


def test_wildcard_platform_grants_everything():
    assert can_access_platform(_Rule(allowed_platforms=["all"]), "openai")


def test_empty_platform_list_grants_nothing():
    assert not can_access_platform(_Rule(allowed_platforms=[]), "claude")


def test_account_allow_list():
    assert can_access_account(_Rule(allowed_account_ids=None), "anything")
    assert can_access_account(_Rule(allowed_account_ids=[]), "anything")
    rule = _Rule(allowed_account_ids=["acc-A"])
    assert can_access_account(rule, "ACC-a")
    assert not can_access_account(rule, "acc-b")


def test_matching_rules_filters_and_orders_by_priority():
    rules = [
        _Rule(pool_group="late", priority=30),
        _Rule(pool_group="off", priority=1, is_enabled=False),
        _Rule(pool_group="other-platform", priority=2, allowed_platforms=["gemini"]),
        _Rule(pool_group="early", priority=10),
        _Rule(pool_group="also-early", priority=10),
    ]
    matched = matching_rules(rules, "claude", now=NOW)
    assert [rule.pool_group for rule in matched] == ["also-early", "early", "late"]
