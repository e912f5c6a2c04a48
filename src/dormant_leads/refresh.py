"""Daily refresh: re-observe stale leads, detect, rebuild cohorts, audit the run."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import BaseModel

from dormant_leads.cohorts import CohortClassifier
from dormant_leads.core.config import Settings
from dormant_leads.core.models import RefreshResult, WorkerRun, WorkerRunStatus
from dormant_leads.detection import DormantDetection
from dormant_leads.errors import SignalSourceError, ValidationError
from dormant_leads.signals.normalizer import SignalNormalizer

logger = logging.getLogger(__name__)

WORKER_TYPE = "daily_refresh"


class WorkerStats(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    avg_duration_ms: float = 0.0
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DailyRefresh:
    """One refresh pass. Every invocation leaves exactly one WorkerRun behind."""

    def __init__(
        self,
        db,
        normalizer: SignalNormalizer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        detection: DormantDetection | None = None,
        classifier: CohortClassifier | None = None,
    ):
        self.db = db
        self.normalizer = normalizer
        self.settings = settings or Settings()
        self.clock = clock
        self.detection = detection or DormantDetection(db, self.settings, clock=clock)
        self.classifier = classifier or CohortClassifier(db, self.settings, clock=clock)

    async def run(self, trigger: str = "cron", triggered_by: str | None = None) -> RefreshResult:
        """Run the refresh workflow.

        Signal source failures skip the line. Anything else marks the run
        failed and is re-raised; rows committed before the failure stay.
        """
        logger.info("Starting daily refresh (trigger: %s)...", trigger)
        start = time.monotonic()

        run = await self.db.insert_worker_run(WorkerRun(
            worker_type=WORKER_TYPE,
            status=WorkerRunStatus.RUNNING,
            trigger=trigger,
            triggered_by=triggered_by,
            started_at=self.clock(),
        ))

        processed = 0
        created = 0
        updated = 0
        failed = 0

        try:
            leads = await self.db.get_stale_active_leads(
                self.clock(), self.settings.refresh_batch_limit
            )
            logger.info("Found %d leads to refresh", len(leads))

            for lead in leads:
                try:
                    await self.normalizer.observe(lead.msisdn_hash)
                    processed += 1
                except (SignalSourceError, ValidationError) as e:
                    logger.error("Failed to refresh lead %s: %s", lead.id, e)
                    failed += 1

            logger.info("Running dormant detection...")
            detected = await self.detection.detect()
            created += detected.leads_created
            updated += detected.leads_updated

            logger.info("Rebuilding cohorts...")
            rebuilt = await self.classifier.rebuild()
            created += rebuilt.members_assigned

        except Exception as e:
            logger.error("Daily refresh failed: %s", e)
            await self.db.finish_worker_run(
                run.id,
                status=WorkerRunStatus.FAILED,
                completed_at=self.clock(),
                duration_ms=int((time.monotonic() - start) * 1000),
                records_processed=processed,
                records_created=created,
                records_updated=updated,
                records_failed=failed,
                error_message=str(e),
                error_stack=traceback.format_exc(),
            )
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        await self.db.finish_worker_run(
            run.id,
            status=WorkerRunStatus.COMPLETED,
            completed_at=self.clock(),
            duration_ms=duration_ms,
            records_processed=processed,
            records_created=created,
            records_updated=updated,
            records_failed=failed,
        )
        logger.info(
            "Daily refresh completed in %dms: %d processed, %d created, %d updated",
            duration_ms, processed, created, updated,
        )
        return RefreshResult(
            worker_run_id=run.id,
            records_processed=processed,
            records_created=created,
            records_updated=updated,
            duration_ms=duration_ms,
        )

    async def get_worker_run_history(self, limit: int = 10) -> list[WorkerRun]:
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        return await self.db.list_worker_runs(WORKER_TYPE, limit)

    async def get_worker_stats(self) -> WorkerStats:
        row = await self.db.get_worker_run_stats(WORKER_TYPE)
        return WorkerStats(
            total_runs=row.get("total_runs") or 0,
            successful_runs=row.get("successful_runs") or 0,
            failed_runs=row.get("failed_runs") or 0,
            avg_duration_ms=float(row.get("avg_duration_ms") or 0.0),
            last_run_at=row.get("last_run_at"),
            last_success_at=row.get("last_success_at"),
        )
