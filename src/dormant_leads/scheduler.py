"""Daily refresh scheduler with a run-in-progress guard."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import RefreshResult
from dormant_leads.errors import RefreshInProgressError
from dormant_leads.refresh import DailyRefresh

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshScheduler:
    """Fires the daily refresh at a fixed local time; manual triggers share the path.

    At most one refresh runs at a time, whatever started it.
    """

    def __init__(
        self,
        refresh: DailyRefresh,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.refresh = refresh
        self.settings = settings or Settings()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def seconds_until_next_run(self, now: datetime) -> float:
        local = now.astimezone()
        target = local.replace(
            hour=self.settings.refresh_hour,
            minute=self.settings.refresh_minute,
            second=0,
            microsecond=0,
        )
        if target <= local:
            target += timedelta(days=1)
        return (target - local).total_seconds()

    async def trigger(
        self, triggered_by: str | None = None, trigger: str = "manual"
    ) -> RefreshResult:
        """Run a refresh now. Raises RefreshInProgressError if one is running."""
        if self._lock.locked():
            raise RefreshInProgressError("A daily refresh is already running")
        async with self._lock:
            return await self.refresh.run(trigger=trigger, triggered_by=triggered_by)

    async def run_forever(self) -> None:
        """Sleep until the next slot, refresh, repeat until stop() is called."""
        logger.info(
            "Refresh scheduler started (daily at %02d:%02d local)",
            self.settings.refresh_hour, self.settings.refresh_minute,
        )
        while not self._stop.is_set():
            wait = self.seconds_until_next_run(self.clock())
            logger.debug("Next refresh in %.0fs", wait)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=wait)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.trigger(trigger="cron")
            except RefreshInProgressError:
                logger.warning("Skipping scheduled refresh: previous run still in progress")
            except Exception as e:
                # The failed WorkerRun carries the details; keep the schedule alive
                logger.error("Scheduled refresh failed: %s", e)
        logger.info("Refresh scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
