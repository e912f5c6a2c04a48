"""RFM cohort classification of active leads."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import BaseModel

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    Cohort,
    CohortMember,
    CohortMemberPage,
    CohortName,
    CohortRebuildResult,
    ContactAttempt,
    Lead,
)
from dormant_leads.errors import NotFoundError, ValidationError
from dormant_leads.scoring import days_between

logger = logging.getLogger(__name__)


COHORT_DEFINITIONS: list[Cohort] = [
    Cohort(
        name=CohortName.HIGH_VALUE,
        description="Recent activity, high frequency, high estimated value (>150 EUR)",
        recency_max=14,
        frequency_min=3,
        monetary_min=150,
    ),
    Cohort(
        name=CohortName.MEDIUM_VALUE,
        description="Moderate activity and value (50-150 EUR)",
        recency_max=30,
        frequency_min=2,
        monetary_min=50,
        monetary_max=150,
    ),
    Cohort(
        name=CohortName.LOW_VALUE,
        description="Low frequency or low value (<50 EUR)",
        monetary_max=50,
    ),
    Cohort(
        name=CohortName.AT_RISK,
        description="Previously high value but declining recency (>30 days)",
        recency_min=30,
        monetary_min=100,
    ),
    Cohort(
        name=CohortName.DORMANT,
        description="High dormant score (>0.6), no recent activity",
        recency_min=60,
        dormant_score_min=0.6,
    ),
    Cohort(
        name=CohortName.CHURNED,
        description="Expired leads with no conversion",
    ),
]


class RFM(BaseModel):
    recency: float
    frequency: int
    monetary: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_rfm(lead: Lead, attempts: list[ContactAttempt], now: datetime) -> RFM:
    """Recency in days since the last attempt (or lead creation), attempt count, device value."""
    dated = [a.created_at for a in attempts if a.created_at is not None]
    last_touch = max(dated) if dated else lead.created_at
    recency = days_between(now, last_touch) if last_touch else 0.0
    return RFM(
        recency=recency,
        frequency=len(attempts),
        monetary=lead.estimated_value or 0.0,
    )


def assign_cohort(rfm: RFM, lead: Lead, now: datetime) -> CohortName:
    """First matching rule wins; the order of the checks is significant."""
    if lead.expires_at is not None and days_between(lead.expires_at, now) < 0:
        return CohortName.CHURNED

    if lead.dormant_score >= 0.6 and rfm.recency > 60:
        return CohortName.DORMANT

    if rfm.monetary >= 100 and rfm.recency > 30:
        return CohortName.AT_RISK

    if rfm.recency <= 14 and rfm.frequency >= 3 and rfm.monetary >= 150:
        return CohortName.HIGH_VALUE

    if rfm.recency <= 30 and rfm.frequency >= 2 and 50 <= rfm.monetary < 150:
        return CohortName.MEDIUM_VALUE

    return CohortName.LOW_VALUE


class CohortClassifier:
    """Rebuilds cohort memberships and serves cohort read views."""

    def __init__(
        self,
        db,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock

    async def rebuild(self) -> CohortRebuildResult:
        """Replace every live membership with a fresh assignment per active lead.

        Previous memberships are soft-removed, never updated, so history stays
        auditable.
        """
        start = time.monotonic()
        now = self.clock()

        cohorts: dict[CohortName, Cohort] = {}
        for definition in COHORT_DEFINITIONS:
            cohorts[definition.name] = await self.db.upsert_cohort(definition)

        removed = await self.db.remove_current_members(now)

        leads = await self.db.get_active_leads(now)
        logger.info(
            "Analyzing %d active leads for cohort assignment (%d memberships retired)",
            len(leads), removed,
        )

        members_assigned = 0
        for lead in leads:
            attempts = await self.db.get_contact_attempts(lead.id)
            rfm = compute_rfm(lead, attempts, now)
            cohort = cohorts[assign_cohort(rfm, lead, now)]
            await self.db.insert_cohort_member(CohortMember(
                cohort_id=cohort.id,
                lead_id=lead.id,
                msisdn_hash=lead.msisdn_hash,
                recency=rfm.recency,
                frequency=rfm.frequency,
                monetary=rfm.monetary,
                dormant_score=lead.dormant_score,
                assigned_at=now,
            ))
            members_assigned += 1

        for cohort in cohorts.values():
            agg = await self.db.get_member_aggregates(cohort.id)
            await self.db.update_cohort_fields(
                cohort.id,
                member_count=agg.get("member_count") or 0,
                avg_dormant_score=float(agg.get("avg_dormant_score") or 0.0),
                avg_estimated_value=float(agg.get("avg_estimated_value") or 0.0),
                last_refresh_at=now,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Cohort rebuild completed in %dms: %d members assigned",
            duration_ms, members_assigned,
        )
        return CohortRebuildResult(
            cohorts_created=len(cohorts),
            members_assigned=members_assigned,
            duration_ms=duration_ms,
        )

    async def get_cohort_stats(self) -> list[Cohort]:
        """Active cohorts, largest first."""
        return await self.db.list_active_cohorts()

    async def get_cohort_members(
        self, name: str, page: int = 1, limit: int = 50
    ) -> CohortMemberPage:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1:
            raise ValidationError("limit must be >= 1")

        cohort = await self.db.get_cohort_by_name(name)
        if cohort is None:
            raise NotFoundError(f"Cohort not found: {name}")

        members, total = await self.db.list_cohort_members(
            cohort.id, limit, (page - 1) * limit
        )
        return CohortMemberPage(
            members=members,
            total=total,
            page=page,
            pages=math.ceil(total / limit),
        )
