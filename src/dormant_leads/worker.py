"""Long-running refresh worker - daily refresh at a fixed local time plus TTL reaping.

Usage:
    dormant-worker              # via pyproject.toml entrypoint
    python -m dormant_leads.worker
"""

from __future__ import annotations

import asyncio
import logging
import signal

from dormant_leads.core.config import Settings
from dormant_leads.core.db_factory import create_database
from dormant_leads.reaper import TTLReaper
from dormant_leads.refresh import DailyRefresh
from dormant_leads.scheduler import RefreshScheduler
from dormant_leads.signals.camara import create_signal_source
from dormant_leads.signals.normalizer import SignalNormalizer

logger = logging.getLogger(__name__)


class RefreshWorker:
    """Wires settings, database and signal source into the refresh scheduler."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.db = create_database(self.settings)
        self.source = create_signal_source(self.settings)
        normalizer = SignalNormalizer(self.db, self.source, self.settings)
        self.scheduler = RefreshScheduler(
            DailyRefresh(self.db, normalizer, self.settings), self.settings
        )
        self.reaper = TTLReaper(self.db, self.settings)
        self._closed = False

    async def start(self) -> None:
        logger.info("Connecting to database (%s backend)...", "sqlite" if self.settings.use_sqlite else "postgres")
        await self.db.connect()

        reaped = await self.reaper.run()
        logger.info("Startup reap: %d leads, %d events", reaped.leads_purged, reaped.events_purged)

        await self.scheduler.run_forever()

    def request_stop(self) -> None:
        self.scheduler.stop()

    async def close(self) -> None:
        """Graceful shutdown."""
        if self._closed:
            return
        self._closed = True
        await self.source.close()
        await self.db.close()
        logger.info("Refresh worker stopped")


async def _run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = RefreshWorker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.start()
    finally:
        await worker.close()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
