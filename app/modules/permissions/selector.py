from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import OrderedDict
from dataclasses import dataclass

from app.core.balancer.availability import AccountStatusAvailability, AvailabilityChecker
from app.core.balancer.health import MappingHealth, weight_score
from app.core.balancer.strategies import RoundRobinCursors, coerce_selection_strategy, select_account
from app.core.config.settings import get_settings
from app.core.metrics import get_metrics
from app.core.utils.request_id import get_request_id
from app.db.models import Account, KeyAccountMapping, SelectionStrategy
from app.modules.permissions.resolver import PermissionResolver
from app.modules.shared.repo_bundle import RouterRepoFactory

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _StickyEntry:
    key_id: str
    account_id: str
    expires_at: float


def cursor_key(key_id: str, platform: str) -> str:
    return f"{key_id}:{(platform or '').strip().lower()}"


def sticky_key(key_id: str, platform: str, session_key: str) -> str:
    return f"{key_id}_{(platform or '').strip().lower()}_{session_key}"


class AccountSelector:
    """Long-lived selector holding round-robin cursors and session stickiness per process."""

    def __init__(
        self,
        repo_factory: RouterRepoFactory,
        *,
        availability: AvailabilityChecker | None = None,
        rng: random.Random | None = None,
        cursors: RoundRobinCursors | None = None,
    ) -> None:
        self._repo_factory = repo_factory
        self._availability = availability or AccountStatusAvailability()
        self._rng = rng or random.Random()
        self._cursors = cursors or RoundRobinCursors()
        self._sticky_lock = asyncio.Lock()
        self._sticky_memory: OrderedDict[str, _StickyEntry] = OrderedDict()

    @property
    def cursors(self) -> RoundRobinCursors:
        return self._cursors

    async def select_best_account(
        self,
        key_id: str,
        platform: str,
        session_key: str | None = None,
    ) -> Account | None:
        settings = get_settings()
        async with self._repo_factory() as repos:
            resolution = await PermissionResolver(repos, self._availability).resolve(key_id, platform)
            candidates = resolution.accounts
            if resolution.top_rule is not None:
                strategy = resolution.top_rule.selection_strategy
            else:
                strategy = coerce_selection_strategy(settings.default_selection_strategy)

            if not candidates:
                logger.info("select_none key=%s platform=%s strategy=%s", key_id, platform, strategy.value)
                get_metrics().observe_selection(scope="key", strategy=strategy.value, outcome="no_available")
                return None

            chosen: Account | None = None
            sticky: str | None = None
            if session_key and settings.sticky_sessions_enabled:
                sticky = sticky_key(key_id, platform, session_key)
            if sticky is not None:
                existing = await self._sticky_get(sticky)
                if existing is not None:
                    chosen = next((account for account in candidates if account.id == existing), None)
                    if chosen is None:
                        await self._sticky_delete(sticky)

            outcome = "sticky" if chosen is not None else "selected"
            if chosen is None:
                chosen = select_account(
                    candidates,
                    strategy,
                    cursors=self._cursors,
                    cursor_key=cursor_key(key_id, platform),
                    rng=self._rng,
                    hash_key=session_key,
                    scores=_performance_scores(candidates, resolution.mappings)
                    if strategy == SelectionStrategy.PERFORMANCE
                    else None,
                )
                if chosen is None:
                    return None
                if sticky is not None:
                    await self._sticky_set(sticky, key_id, chosen.id)

            await repos.accounts.mark_used(chosen.id)
            await repos.key_mappings.ensure(key_id, chosen.id, weight=chosen.weight)
            await repos.key_mappings.adjust_connections(key_id, chosen.id, 1)

        logger.info(
            "select_account key=%s platform=%s strategy=%s account=%s candidates=%s outcome=%s request_id=%s",
            key_id,
            platform,
            strategy.value,
            chosen.id,
            len(candidates),
            outcome,
            get_request_id(),
        )
        get_metrics().observe_selection(scope="key", strategy=strategy.value, outcome=outcome)
        return chosen

    async def invalidate_key(self, key_id: str) -> None:
        cleared_cursors = self._cursors.reset_owner(key_id)
        async with self._sticky_lock:
            stale = [key for key, entry in self._sticky_memory.items() if entry.key_id == key_id]
            for key in stale:
                del self._sticky_memory[key]
        logger.debug("selector_invalidated key=%s cursors=%s sticky=%s", key_id, cleared_cursors, len(stale))

    async def _sticky_get(self, key: str) -> str | None:
        now = time.time()
        async with self._sticky_lock:
            entry = self._sticky_memory.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._sticky_memory.pop(key, None)
                return None
            self._sticky_memory.move_to_end(key)
            return entry.account_id

    async def _sticky_set(self, key: str, key_id: str, account_id: str) -> None:
        settings = get_settings()
        expires_at = time.time() + settings.sticky_sessions_memory_ttl_seconds
        async with self._sticky_lock:
            self._sticky_memory[key] = _StickyEntry(key_id=key_id, account_id=account_id, expires_at=expires_at)
            self._sticky_memory.move_to_end(key)
            while len(self._sticky_memory) > settings.sticky_sessions_memory_maxsize:
                self._sticky_memory.popitem(last=False)

    async def _sticky_delete(self, key: str) -> None:
        async with self._sticky_lock:
            self._sticky_memory.pop(key, None)


def _performance_scores(
    candidates: list[Account],
    mappings: dict[str, KeyAccountMapping],
) -> dict[str, float]:
    scores: dict[str, float] = {}
    for account in candidates:
        mapping = mappings.get(account.id)
        scores[account.id] = weight_score(mapping if mapping is not None else MappingHealth(weight=account.weight))
    return scores
