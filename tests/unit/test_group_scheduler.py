from __future__ import annotations

import asyncio

import pytest

from app.modules.groups.scheduler import GroupHealthScheduler

pytestmark = pytest.mark.unit


class _StubBalancer:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[bool] = []
        self._fail = fail

    async def check_all_groups(self, *, due_only: bool = False) -> dict[int, bool]:
        self.calls.append(due_only)
        if self._fail:
            raise RuntimeError("database unavailable")
        return {1: True}


@pytest.mark.asyncio
async def test_run_once_checks_due_groups():
    balancer = _StubBalancer()
    scheduler = GroupHealthScheduler(balancer=balancer, interval_seconds=60, enabled=True)

    assert await scheduler.run_once() == {1: True}
    assert balancer.calls == [True]


@pytest.mark.asyncio
async def test_run_once_survives_errors():
    scheduler = GroupHealthScheduler(balancer=_StubBalancer(fail=True), interval_seconds=60, enabled=True)
    assert await scheduler.run_once() == {}


@pytest.mark.asyncio
async def test_disabled_scheduler_never_starts():
    balancer = _StubBalancer()
    scheduler = GroupHealthScheduler(balancer=balancer, interval_seconds=0.01, enabled=False)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert balancer.calls == []


@pytest.mark.asyncio
async def test_started_scheduler_polls_until_stopped():
    balancer = _StubBalancer()
    scheduler = GroupHealthScheduler(balancer=balancer, interval_seconds=0.01, enabled=True)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()
    calls = len(balancer.calls)
    await asyncio.sleep(0.03)

    assert calls >= 1
    assert len(balancer.calls) == calls
