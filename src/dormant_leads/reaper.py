"""TTL reaper - purges expired leads and processed network events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import ReapResult
from dormant_leads.lead_store import LeadStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TTLReaper:
    """Deletes rows past their retention horizon. Safe next to normal traffic."""

    def __init__(
        self,
        db,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock
        self.store = LeadStore(db, self.settings, clock=clock)

    async def run(self) -> ReapResult:
        leads_purged = await self.store.purge_expired()
        cutoff = self.clock() - timedelta(days=self.settings.event_retention_days)
        events_purged = await self.db.delete_processed_events(cutoff)
        logger.info(
            "Reaper removed %d leads and %d events older than %s",
            leads_purged, events_purged, cutoff.date(),
        )
        return ReapResult(leads_purged=leads_purged, events_purged=events_purged)
