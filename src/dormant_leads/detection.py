"""Batch dormant detection over unprocessed network events."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

import pydantic

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    DetectionResult,
    DormantStats,
    Evaluation,
    Lead,
    NetworkEvent,
    NextAction,
)
from dormant_leads.lead_store import LeadStore, lead_day
from dormant_leads.scoring import ScoringRules, activation_window, days_between, score_events

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def group_events(events: list[NetworkEvent]) -> dict[str, list[NetworkEvent]]:
    """Group events by hashed line, keeping arrival order inside each group."""
    grouped: dict[str, list[NetworkEvent]] = {}
    for event in events:
        grouped.setdefault(event.msisdn_hash, []).append(event)
    return grouped


class DormantDetection:
    """Scores each line's pending events and folds the result into its lead."""

    def __init__(
        self,
        db,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.rules = ScoringRules.from_settings(self.settings)
        self.clock = clock
        self.store = LeadStore(db, self.settings, clock=clock)

    def contact_action(self, score: float, previous: Lead, now: datetime) -> NextAction:
        """Next action given the contact history already on record for the line."""
        if previous.contact_count >= self.settings.max_prior_contacts:
            return NextAction.EXCLUDE

        if previous.last_contact_at is not None:
            if days_between(now, previous.last_contact_at) < self.settings.recontact_hold_days:
                return NextAction.HOLD

        if score >= self.settings.detection_score_threshold:
            return NextAction.SEND_NUDGE
        return NextAction.HOLD

    def next_action(self, score: float, lead: Lead, now: datetime) -> NextAction:
        """Next action for a line whose lead for today already exists."""
        if lead.expires_at is not None and days_between(lead.expires_at, now) < 0:
            return NextAction.EXPIRED
        return self.contact_action(score, lead, now)

    async def detect(self) -> DetectionResult:
        """Process up to ``detection_batch_limit`` pending events, oldest first.

        Malformed event payloads are counted as errors and left unprocessed.
        Persistence errors propagate; lines already handled stay committed.
        """
        start = time.monotonic()
        result = DetectionResult()
        now = self.clock()

        events = await self.db.get_unprocessed_events(self.settings.detection_batch_limit)
        logger.info("Found %d unprocessed events", len(events))

        for line_hash, line_events in group_events(events).items():
            try:
                score, signals = score_events(line_events, self.rules, now)
            except pydantic.ValidationError as e:
                logger.error("Bad event payload for %s...: %s", line_hash[:8], e)
                result.errors += 1
                continue

            eligible = score >= self.settings.detection_score_threshold
            existing = await self.db.get_latest_lead(line_hash)

            if existing is not None and existing.lead_day == lead_day(now):
                await self.db.update_lead_fields(
                    existing.id,
                    now=now,
                    dormant_score=score,
                    signals=signals,
                    eligible=eligible,
                    next_action=self.next_action(score, existing, now),
                )
                result.leads_updated += 1
            else:
                # New day: today's lead, judged against the line's last lead
                if existing is not None:
                    action = self.contact_action(score, existing, now)
                else:
                    action = NextAction.SEND_NUDGE if eligible else NextAction.HOLD
                _, created = await self.store.upsert(line_hash, Evaluation(
                    dormant_score=score,
                    eligible=eligible,
                    activation_window_days=activation_window(signals.days_since_swap, self.rules),
                    next_action=action,
                    exclusions=[],
                    signals=signals,
                ))
                if created:
                    result.leads_created += 1
                else:
                    result.leads_updated += 1

            await self.db.mark_events_processed([e.id for e in line_events if e.id])
            result.events_processed += len(line_events)

        logger.info(
            "Dormant detection completed in %dms: %d events, %d created, %d updated, %d errors",
            int((time.monotonic() - start) * 1000),
            result.events_processed, result.leads_created,
            result.leads_updated, result.errors,
        )
        return result

    async def get_dormant_stats(self) -> DormantStats:
        """Pool-wide counts across every stored lead, expired included.

        ``pending_nudges`` only counts leads that have not yet expired.
        """
        row = await self.db.get_dormant_stats(self.clock())
        return DormantStats(
            total_leads=row.get("total_leads") or 0,
            eligible_leads=row.get("eligible_leads") or 0,
            avg_dormant_score=round(row.get("avg_dormant_score") or 0.0, 4),
            pending_nudges=row.get("pending_nudges") or 0,
        )
