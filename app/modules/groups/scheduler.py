from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from app.core.config.settings import get_settings
from app.modules.groups.balancer import GroupLoadBalancer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GroupHealthScheduler:
    balancer: GroupLoadBalancer
    interval_seconds: float
    enabled: bool
    _task: asyncio.Task[None] | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def start(self) -> None:
        if not self.enabled:
            return
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> dict[int, bool]:
        async with self._lock:
            try:
                return await self.balancer.check_all_groups(due_only=True)
            except Exception:
                logger.exception("Group health check loop failed")
                return {}

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


def build_group_health_scheduler(balancer: GroupLoadBalancer) -> GroupHealthScheduler:
    settings = get_settings()
    return GroupHealthScheduler(
        balancer=balancer,
        interval_seconds=settings.group_health_check_poll_seconds,
        enabled=settings.group_health_check_enabled,
    )
