from __future__ import annotations

import hashlib
import random
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

from app.core.balancer.health import HealthTracked, weight_score
from app.db.models import LoadBalanceStrategy, SelectionStrategy


class Candidate(Protocol):
    id: str
    priority: int
    weight: int
    usage_count: int


C = TypeVar("C", bound=Candidate)
M = TypeVar("M", bound=HealthTracked)


class RoundRobinCursors:
    """Per-key rotating cursors. Safe to share between tasks and threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cursors: dict[str, int] = {}

    def next_index(self, key: str, size: int) -> int:
        if size <= 0:
            raise ValueError("size must be positive")
        with self._lock:
            cursor = self._cursors.get(key, 0)
            self._cursors[key] = cursor + 1
        return cursor % size

    def peek(self, key: str) -> int:
        with self._lock:
            return self._cursors.get(key, 0)

    def reset_owner(self, owner: str) -> int:
        """Drop every ``"{owner}:{scope}"`` cursor."""
        with self._lock:
            keys = [key for key in self._cursors if key.rpartition(":")[0] == owner]
            for key in keys:
                del self._cursors[key]
        return len(keys)


def coerce_selection_strategy(value: SelectionStrategy | str | None) -> SelectionStrategy:
    if isinstance(value, SelectionStrategy):
        return value
    try:
        return SelectionStrategy((value or "").strip().lower())
    except ValueError:
        return SelectionStrategy.PRIORITY


def stable_hash(value: str) -> int:
    """Hash that stays the same across processes, unlike the builtin ``hash``."""
    return int.from_bytes(hashlib.sha256(value.encode("utf-8")).digest()[:8], "big")


def select_account(
    candidates: Sequence[C],
    strategy: SelectionStrategy | str | None,
    *,
    cursors: RoundRobinCursors | None = None,
    cursor_key: str | None = None,
    rng: random.Random | None = None,
    scores: Mapping[str, float] | None = None,
    hash_key: str | None = None,
) -> C | None:
    if not candidates:
        return None
    resolved = coerce_selection_strategy(strategy)
    if resolved == SelectionStrategy.CONSISTENT_HASH and not hash_key:
        resolved = SelectionStrategy.PRIORITY
    match resolved:
        case SelectionStrategy.ROUND_ROBIN:
            if cursors is None or cursor_key is None:
                raise ValueError("round_robin selection needs cursors and a cursor key")
            return candidates[cursors.next_index(cursor_key, len(candidates))]
        case SelectionStrategy.RANDOM:
            return (rng or random).choice(list(candidates))
        case SelectionStrategy.PERFORMANCE:
            scored = scores or {}
            return min(
                candidates,
                key=lambda account: (-scored.get(account.id, float(max(account.weight, 0))), account.priority),
            )
        case SelectionStrategy.LEAST_USED:
            return min(candidates, key=lambda account: (account.usage_count, account.priority, -account.weight))
        case SelectionStrategy.WEIGHTED:
            population = list(candidates)
            weights = [max(account.weight, 1) for account in population]
            return (rng or random).choices(population, weights=weights, k=1)[0]
        case SelectionStrategy.CONSISTENT_HASH:
            return candidates[stable_hash(hash_key or "") % len(candidates)]
        case _:
            return min(candidates, key=lambda account: (account.priority, -account.weight, account.usage_count))


@dataclass(frozen=True, slots=True)
class MappingChoice(Generic[M]):
    mapping: M | None
    next_round_robin_index: int


def select_mapping(
    candidates: Sequence[M],
    strategy: LoadBalanceStrategy,
    *,
    round_robin_index: int = 0,
    rng: random.Random | None = None,
) -> MappingChoice[M]:
    if not candidates:
        return MappingChoice(mapping=None, next_round_robin_index=round_robin_index)
    match strategy:
        case LoadBalanceStrategy.WEIGHTED:
            population = list(candidates)
            weights = [weight_score(mapping) for mapping in population]
            chosen = (rng or random).choices(population, weights=weights, k=1)[0]
            return MappingChoice(mapping=chosen, next_round_robin_index=round_robin_index)
        case LoadBalanceStrategy.LEAST_CONNECTIONS:
            chosen = min(candidates, key=lambda mapping: (mapping.current_connections, -weight_score(mapping)))
            return MappingChoice(mapping=chosen, next_round_robin_index=round_robin_index)
        case _:
            cursor = max(round_robin_index, 0)
            chosen = candidates[cursor % len(candidates)]
            return MappingChoice(mapping=chosen, next_round_robin_index=cursor + 1)
