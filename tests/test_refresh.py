"""Tests for the daily refresh workflow and its worker-run audit trail."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from dormant_leads.core.config import Settings
from dormant_leads.core.models import NextAction, WorkerRunStatus
from dormant_leads.errors import SignalSourceError, ValidationError
from dormant_leads.refresh import DailyRefresh
from dormant_leads.signals.base import SignalSource
from dormant_leads.signals.camara import SIM_SWAP_PATH, CamaraSignalSource
from dormant_leads.signals.normalizer import SignalNormalizer
from dormant_leads.signals.stub import StubSignalSource


class DownSource(SignalSource):

    async def get_reachability_status(self, line_id):
        raise SignalSourceError("down")

    async def get_sim_swap_status(self, line_id):
        raise SignalSourceError("down")


class BrokenDetection:

    async def detect(self):
        raise RuntimeError("database went away")


def _refresh(db, settings, clock, source=None, **kwargs) -> DailyRefresh:
    normalizer = SignalNormalizer(db, source or StubSignalSource(clock=clock), settings, clock=clock)
    return DailyRefresh(db, normalizer, settings, clock=clock, **kwargs)


class TestRun:

    async def test_refresh_observes_detects_and_classifies(self, db, settings, clock, add_lead):
        lead = await add_lead("abc123")
        refresh = _refresh(db, settings, clock)

        result = await refresh.run(triggered_by="ops@example.com", trigger="manual")

        assert result.records_processed == 1
        assert result.records_updated == 1
        # one cohort membership
        assert result.records_created == 1

        run = await db.get_worker_run(result.worker_run_id)
        assert run.status == WorkerRunStatus.COMPLETED
        assert run.trigger == "manual"
        assert run.triggered_by == "ops@example.com"
        assert run.records_processed == 1
        assert run.records_failed == 0
        assert run.completed_at is not None
        assert run.duration_ms is not None

        refreshed = await db.get_lead(lead.id)
        assert refreshed.dormant_score == pytest.approx(0.10)
        assert refreshed.next_action == NextAction.HOLD
        assert refreshed.signals.history.event_count == 2

    async def test_excluded_leads_are_not_refreshed(self, db, settings, clock, add_lead):
        await add_lead("abc123", reachable=True)
        result = await _refresh(db, settings, clock).run()
        assert result.records_processed == 0

    async def test_batch_limit(self, db, settings, clock, add_lead):
        settings.refresh_batch_limit = 2
        for i in range(3):
            await add_lead(f"line-{i}")
        result = await _refresh(db, settings, clock).run()
        assert result.records_processed == 2

    async def test_source_failures_skip_the_line(self, db, settings, clock, add_lead):
        await add_lead("abc123")
        result = await _refresh(db, settings, clock, source=DownSource()).run()

        assert result.records_processed == 0
        run = await db.get_worker_run(result.worker_run_id)
        assert run.status == WorkerRunStatus.COMPLETED
        assert run.records_failed == 1

    async def test_malformed_upstream_response_skips_the_line(self, db, settings, clock, add_lead):
        await add_lead("abc123")
        source = CamaraSignalSource(
            Settings(camara_base_url="http://camara.test", camara_access_token="token")
        )
        bad = httpx.Response(
            200,
            json={"latestSimChange": "not-a-date", "lastStatusTime": "not-a-date"},
            request=httpx.Request("POST", "http://camara.test" + SIM_SWAP_PATH),
        )
        source._client = AsyncMock()
        source._client.post = AsyncMock(return_value=bad)

        result = await _refresh(db, settings, clock, source=source).run()

        assert result.records_processed == 0
        run = await db.get_worker_run(result.worker_run_id)
        assert run.status == WorkerRunStatus.COMPLETED
        assert run.records_failed == 1

    async def test_unexpected_failure_marks_the_run_failed(self, db, settings, clock, add_lead):
        await add_lead("abc123")
        refresh = _refresh(db, settings, clock, detection=BrokenDetection())

        with pytest.raises(RuntimeError):
            await refresh.run()

        [run] = await refresh.get_worker_run_history()
        assert run.status == WorkerRunStatus.FAILED
        assert run.error_message == "database went away"
        assert "RuntimeError" in run.error_stack
        assert run.records_processed == 1

    async def test_empty_database(self, db, settings, clock):
        result = await _refresh(db, settings, clock).run()
        assert result.records_processed == 0
        assert result.records_created == 0


class TestHistory:

    async def test_history_and_stats(self, db, settings, clock):
        ok = _refresh(db, settings, clock)
        broken = _refresh(db, settings, clock, detection=BrokenDetection())

        await ok.run()
        with pytest.raises(RuntimeError):
            await broken.run()

        history = await ok.get_worker_run_history(limit=10)
        assert len(history) == 2

        stats = await ok.get_worker_stats()
        assert stats.total_runs == 2
        assert stats.successful_runs == 1
        assert stats.failed_runs == 1
        assert stats.last_run_at is not None
        assert stats.last_success_at is not None

    async def test_empty_stats(self, db, settings, clock):
        stats = await _refresh(db, settings, clock).get_worker_stats()
        assert stats.total_runs == 0
        assert stats.avg_duration_ms == 0.0
        assert stats.last_run_at is None

    async def test_history_limit(self, db, settings, clock):
        with pytest.raises(ValidationError):
            await _refresh(db, settings, clock).get_worker_run_history(limit=0)
