"""Lead state store: one lead per hashed line per calendar day, with TTL."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    CanonicalSignal,
    ConversionFunnel,
    Evaluation,
    Lead,
    LeadOutput,
    LeadPage,
    LeadStats,
    StatusCounts,
    TargetFilters,
    TrackedLead,
    ValueDistribution,
)
from dormant_leads.errors import NotFoundError, ValidationError
from dormant_leads.scoring import ScoringRules, evaluate

logger = logging.getLogger(__name__)

TIERS = range(6)
VALID_STATUSES = {None, "eligible", "contacted", "converted", "expired"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lead_day(now: datetime) -> date:
    """Idempotency day of a lead: the server-local calendar date."""
    return now.astimezone().date()


def validate_filters(filters: TargetFilters) -> None:
    if filters.status not in VALID_STATUSES:
        raise ValidationError(f"Unknown lead status filter: {filters.status}")
    if filters.limit < 1:
        raise ValidationError("limit must be >= 1")
    if filters.offset < 0:
        raise ValidationError("offset must be >= 0")


class LeadStore:
    """Persists evaluations as leads and serves the read projections."""

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

    async def upsert(
        self, line_hash: str, evaluation: Evaluation
    ) -> tuple[Lead, bool]:
        """Write today's lead for ``line_hash``. Returns (lead, created).

        Re-evaluation on the same day overwrites the evaluation fields in
        place and keeps the lead id; expiry is fixed at creation.
        """
        if not line_hash or not line_hash.strip():
            raise ValidationError("msisdn_hash is required")

        now = self.clock()
        lead, created = await self.db.upsert_lead_for_day(
            line_hash,
            lead_day(now),
            now + timedelta(days=self.settings.lead_ttl_days),
            now=now,
            dormant_score=evaluation.dormant_score,
            eligible=evaluation.eligible,
            activation_window_days=evaluation.activation_window_days,
            next_action=evaluation.next_action,
            exclusions=evaluation.exclusions,
            signals=evaluation.signals,
        )
        if created:
            logger.info("Created lead %s for %s...", lead.id, line_hash[:8])
        else:
            logger.debug("Updated lead %s for %s...", lead.id, line_hash[:8])
        return lead, created

    async def evaluate_and_store(self, signal: CanonicalSignal) -> LeadOutput:
        """Score one canonical signal and persist the result."""
        evaluation = evaluate(signal, self.rules, self.clock())
        lead, _ = await self.upsert(signal.msisdn_hash, evaluation)
        return LeadOutput(
            lead_id=lead.id,
            msisdn_hash=lead.msisdn_hash,
            dormant_score=lead.dormant_score,
            eligible=lead.eligible,
            activation_window_days=lead.activation_window_days,
            next_action=lead.next_action,
            exclusions=lead.exclusions,
            signals=lead.signals,
            created_at=lead.created_at,
            expires_at=lead.expires_at,
        )

    async def purge_expired(self) -> int:
        """Hard-delete every lead whose expires_at has passed."""
        count = await self.db.delete_expired_leads(self.clock())
        logger.info("Purged %d expired leads", count)
        return count

    async def record_contact(self, lead_id: str, at: datetime | None = None) -> None:
        await self.db.increment_contact(lead_id, at or self.clock())

    async def record_opt_out(self, line_hash: str) -> None:
        if not line_hash or not line_hash.strip():
            raise ValidationError("msisdn_hash is required")
        await self.db.add_opt_out(line_hash)

    # -----------------------------------------------------------------------
    # Nudge tracking
    # -----------------------------------------------------------------------

    async def get_lead_by_tracking_token(self, token: str) -> TrackedLead | None:
        """Resolve the tracking token of a sent nudge to its lead and attempt."""
        attempt = await self.db.get_attempt_by_token(token)
        if attempt is None:
            return None
        lead = await self.db.get_lead(attempt.lead_id)
        if lead is None:
            return None
        return TrackedLead(lead=lead, attempt=attempt)

    async def _require_tracked(self, token: str) -> TrackedLead:
        if not token or not token.strip():
            raise ValidationError("tracking token is required")
        tracked = await self.get_lead_by_tracking_token(token)
        if tracked is None:
            raise NotFoundError(f"Unknown tracking token: {token}")
        return tracked

    async def record_click(self, token: str) -> TrackedLead:
        """Mark the nudge behind ``token`` as clicked.

        Only the first click counts toward the campaign's ``total_clicked``.
        """
        tracked = await self._require_tracked(token)
        now = self.clock()
        if await self.db.mark_attempt_clicked(tracked.attempt.id, now):
            if tracked.attempt.campaign_id:
                await self.db.increment_campaign_counter(
                    tracked.attempt.campaign_id, "total_clicked", now
                )
            logger.info("Click on lead %s via attempt %s", tracked.lead.id, tracked.attempt.id)
        return await self._require_tracked(token)

    async def record_conversion(self, token: str) -> TrackedLead:
        """Mark the lead behind ``token`` as converted, once."""
        tracked = await self._require_tracked(token)
        now = self.clock()
        if await self.db.mark_lead_converted(tracked.lead.id, now):
            if tracked.attempt.campaign_id:
                await self.db.increment_campaign_counter(
                    tracked.attempt.campaign_id, "total_converted", now
                )
            logger.info("Lead %s converted", tracked.lead.id)
        return await self._require_tracked(token)

    # -----------------------------------------------------------------------
    # Read projections
    # -----------------------------------------------------------------------

    async def get_lead(self, lead_id: str) -> Lead | None:
        return await self.db.get_lead(lead_id)

    async def query_leads(self, filters: TargetFilters) -> LeadPage:
        validate_filters(filters)
        leads, total = await self.db.query_leads(
            filters, self.clock(), self.settings.max_contacts_per_lead
        )
        return LeadPage(
            leads=leads,
            total=total,
            limit=filters.limit,
            offset=filters.offset,
            filters=filters,
        )

    async def get_eligible_leads(self, limit: int = 100) -> list[Lead]:
        """Eligible nudge candidates, best score first."""
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        return await self.db.get_eligible_leads(
            self.clock(), self.settings.max_contacts_per_lead, limit
        )

    async def get_stats(self) -> LeadStats:
        counts = await self.db.get_lead_counts(
            self.clock(), self.settings.max_contacts_per_lead
        )
        total_leads = counts.get("total_leads", 0)
        eligible = counts.get("eligible", 0)
        contacted = counts.get("contacted", 0)
        converted = counts.get("converted", 0)

        by_tier = {f"tier_{t}": 0 for t in TIERS}
        total_value = 0.0
        values: list[float] = []
        for tier, value in await self.db.get_lead_values():
            key = f"tier_{tier or 0}"
            by_tier[key] = by_tier.get(key, 0) + 1
            total_value += value or 0.0
            if value and value > 0:
                values.append(value)

        average = total_value / total_leads if total_leads > 0 else 0.0
        median = sorted(values)[len(values) // 2] if values else 0.0

        funnel_eligible = eligible + contacted + converted
        funnel_contacted = contacted + converted
        rate = converted / funnel_eligible * 100 if funnel_eligible > 0 else 0.0

        return LeadStats(
            total_leads=total_leads,
            by_status=StatusCounts(
                eligible=eligible,
                contacted=contacted,
                # no reply tracking yet, responded mirrors contacted
                responded=contacted,
                converted=converted,
                expired=counts.get("expired", 0),
            ),
            by_tier=by_tier,
            value_distribution=ValueDistribution(
                total_potential_value=round(total_value),
                average_value=round(average),
                median_value=round(median),
            ),
            conversion_funnel=ConversionFunnel(
                eligible=funnel_eligible,
                contacted=funnel_contacted,
                responded=funnel_contacted,
                converted=converted,
                conversion_rate=round(rate, 2),
            ),
        )
