"""Tests for the refresh scheduler - next slot, in-progress guard, loop shutdown."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from dormant_leads.core.config import Settings
from dormant_leads.core.models import RefreshResult
from dormant_leads.errors import RefreshInProgressError
from dormant_leads.scheduler import RefreshScheduler


class FakeRefresh:
    """Records calls; optionally blocks until released or fails."""

    def __init__(self, block=False, fail_first=False):
        self.calls: list[tuple[str, str | None]] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.block = block
        self.fail_first = fail_first
        self.on_call = None

    async def run(self, trigger="cron", triggered_by=None):
        self.calls.append((trigger, triggered_by))
        self.started.set()
        if self.on_call:
            self.on_call()
        if self.block:
            await self.release.wait()
        if self.fail_first and len(self.calls) == 1:
            raise RuntimeError("boom")
        return RefreshResult(worker_run_id=f"run-{len(self.calls)}")


class TestNextRun:

    def test_later_today(self):
        scheduler = RefreshScheduler(FakeRefresh(), Settings(refresh_hour=3, refresh_minute=0))
        now = datetime(2026, 6, 10, 2, 0).astimezone()
        assert scheduler.seconds_until_next_run(now) == 3600

    def test_tomorrow_when_slot_has_passed(self):
        scheduler = RefreshScheduler(FakeRefresh(), Settings(refresh_hour=3, refresh_minute=0))
        now = datetime(2026, 6, 10, 4, 0).astimezone()
        assert scheduler.seconds_until_next_run(now) == 23 * 3600

    def test_exactly_on_the_slot_waits_a_day(self):
        scheduler = RefreshScheduler(FakeRefresh(), Settings(refresh_hour=3, refresh_minute=30))
        now = datetime(2026, 6, 10, 3, 30).astimezone()
        assert scheduler.seconds_until_next_run(now) == 24 * 3600


class TestTrigger:

    async def test_manual_trigger(self):
        refresh = FakeRefresh()
        scheduler = RefreshScheduler(refresh, Settings())
        result = await scheduler.trigger(triggered_by="ops")
        assert result.worker_run_id == "run-1"
        assert refresh.calls == [("manual", "ops")]
        assert scheduler.running is False

    async def test_concurrent_trigger_is_rejected(self):
        refresh = FakeRefresh(block=True)
        scheduler = RefreshScheduler(refresh, Settings())

        task = asyncio.create_task(scheduler.trigger(triggered_by="first"))
        await refresh.started.wait()
        assert scheduler.running is True

        with pytest.raises(RefreshInProgressError):
            await scheduler.trigger(triggered_by="second")

        refresh.release.set()
        await task
        assert refresh.calls == [("manual", "first")]
        assert scheduler.running is False


class TestRunForever:

    async def test_stop_before_start(self):
        refresh = FakeRefresh()
        scheduler = RefreshScheduler(refresh, Settings())
        scheduler.stop()
        await scheduler.run_forever()
        assert refresh.calls == []

    async def test_fires_on_schedule_until_stopped(self):
        refresh = FakeRefresh()
        scheduler = RefreshScheduler(refresh, Settings())
        scheduler.seconds_until_next_run = lambda now: 0.01
        refresh.on_call = lambda: scheduler.stop() if len(refresh.calls) == 2 else None

        await asyncio.wait_for(scheduler.run_forever(), timeout=5)
        assert refresh.calls == [("cron", None), ("cron", None)]

    async def test_failed_run_keeps_the_schedule(self):
        refresh = FakeRefresh(fail_first=True)
        scheduler = RefreshScheduler(refresh, Settings())
        scheduler.seconds_until_next_run = lambda now: 0.01
        refresh.on_call = lambda: scheduler.stop() if len(refresh.calls) == 2 else None

        await asyncio.wait_for(scheduler.run_forever(), timeout=5)
        assert len(refresh.calls) == 2

    async def test_stop_interrupts_the_wait(self):
        refresh = FakeRefresh()
        scheduler = RefreshScheduler(refresh, Settings())
        scheduler.seconds_until_next_run = lambda now: 3600

        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.01)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)
        assert refresh.calls == []
