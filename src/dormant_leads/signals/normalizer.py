"""Turn raw network observations into canonical signals and stored events."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    CanonicalSignal,
    EventType,
    LineType,
    NetworkEvent,
    ReachabilityObservation,
    SignalMetadata,
    SimSwapObservation,
)
from dormant_leads.errors import SignalSourceError, ValidationError
from dormant_leads.signals.base import SignalSource

logger = logging.getLogger(__name__)

HISTORY_DAYS = 30
HISTORY_LEADS = 5


def hash_msisdn(msisdn: str, salt: str) -> str:
    """sha256(msisdn + salt) as hex. The raw number is never stored."""
    if not salt:
        raise ValidationError("MSISDN_HASH_SALT is not configured")
    if not msisdn or not msisdn.strip():
        raise ValidationError("msisdn is required")
    return hashlib.sha256((msisdn + salt).encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignalNormalizer:
    """Collects per-line facts from a signal source and the lead history."""

    def __init__(
        self,
        db,
        source: SignalSource,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.source = source
        self.settings = settings or Settings()
        self.clock = clock

    async def collect(
        self,
        msisdn: str,
        line_type: LineType = LineType.CONSUMER,
        fraud_flag: bool = False,
    ) -> CanonicalSignal:
        """Build the canonical input for one line.

        A reachability failure degrades to "unreachable"; a SIM swap lookup
        failure propagates as SignalSourceError.
        """
        line_hash = hash_msisdn(msisdn, self.settings.msisdn_hash_salt)
        now = self.clock()
        logger.debug("Collecting signals for %s...", line_hash[:8])

        try:
            status = await self.source.get_reachability_status(msisdn)
            reachability = ReachabilityObservation(
                reachable=status.reachable,
                checked_ts=now,
                last_activity_ts=status.last_status_time,
            )
        except SignalSourceError as e:
            logger.error("Failed to get reachability for %s: %s", line_hash[:8], e)
            reachability = ReachabilityObservation(reachable=False, checked_ts=now)

        swap = await self.source.get_sim_swap_status(msisdn)

        recent = await self.db.get_recent_leads(
            line_hash, now - timedelta(days=HISTORY_DAYS), limit=HISTORY_LEADS
        )
        swap_dates = {
            lead.signals.swap.swapped_at for lead in recent if lead.signals.swap.swapped_at
        }
        if swap.swapped_at is not None:
            swap_dates.add(swap.swapped_at)
        contacts = [lead.last_contact_at for lead in recent if lead.last_contact_at]

        return CanonicalSignal(
            msisdn_hash=line_hash,
            sim_swap=SimSwapObservation(
                occurred=swap.swapped_at is not None,
                ts=swap.swapped_at or now,
            ),
            old_device_reachability=reachability,
            line_type=line_type,
            fraud_flag=fraud_flag,
            metadata=SignalMetadata(
                swap_count_30d=len(swap_dates) or None,
                opt_out=await self.db.is_opted_out(line_hash),
                last_contact_ts=max(contacts) if contacts else None,
            ),
        )

    async def observe(self, line_hash: str, line_id: str | None = None) -> list[str]:
        """Record fresh SIM swap and reachability observations as raw events.

        ``line_id`` is what the signal source is queried with; it defaults to
        the hashed line for sources that resolve hashed identifiers themselves.
        Source errors propagate before anything is written.
        """
        if not line_hash or not line_hash.strip():
            raise ValidationError("msisdn_hash is required")
        target = line_id or line_hash

        swap = await self.source.get_sim_swap_status(target)
        reach = await self.source.get_reachability_status(target)
        now = self.clock()

        ids = []
        for event_type, status in (
            (EventType.SIM_SWAP, swap),
            (EventType.REACHABILITY_CHECK, reach),
        ):
            ids.append(await self.db.insert_network_event(NetworkEvent(
                msisdn_hash=line_hash,
                event_type=event_type,
                payload=status.model_dump(mode="json"),
                created_at=now,
            )))
        logger.debug("Stored %d events for %s...", len(ids), line_hash[:8])
        return ids
