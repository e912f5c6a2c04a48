"""Campaign definitions: create, read, update, delete and stats."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    Campaign,
    CampaignCreateRequest,
    CampaignPage,
    CampaignStats,
    CampaignStatus,
    CampaignUpdateRequest,
    TargetFilters,
)
from dormant_leads.errors import NotFoundError, ValidationError
from dormant_leads.lead_store import validate_filters
from dormant_leads.state_machine import TransitionError, validate_transition

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


class CampaignManager:
    """Campaign lifecycle outside of dispatch itself."""

    def __init__(
        self,
        db,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock

    async def create(self, request: CampaignCreateRequest) -> Campaign:
        """Create a campaign with its estimated reach.

        Scheduled when a send time is given, draft otherwise.
        """
        max_per_hour = request.max_per_hour or self.settings.default_max_per_hour
        batch_size = request.batch_size or self.settings.default_batch_size
        if max_per_hour < 1 or batch_size < 1:
            raise ValidationError("max_per_hour and batch_size must be >= 1")
        if not request.name or not request.name.strip():
            raise ValidationError("Campaign name is required")
        reach = await self.estimate_reach(request.target_filters)

        campaign = await self.db.insert_campaign(Campaign(
            name=request.name,
            description=request.description,
            target_filters=request.target_filters,
            estimated_reach=reach,
            template_id=request.template_id,
            template_variant=request.template_variant,
            channel=request.channel,
            scheduled_at=request.scheduled_at,
            max_per_hour=max_per_hour,
            batch_size=batch_size,
            status=CampaignStatus.SCHEDULED if request.scheduled_at else CampaignStatus.DRAFT,
            created_by=request.created_by,
        ))
        logger.info("Created campaign %s (%s), estimated reach %d", campaign.id, campaign.name, reach)
        return campaign

    async def get(self, campaign_id: str) -> Campaign:
        campaign = await self.db.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def list(
        self, status: CampaignStatus | None = None, limit: int = 50, offset: int = 0
    ) -> CampaignPage:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be >= 1 and offset >= 0")
        campaigns, total = await self.db.list_campaigns(
            status.value if status else None, limit, offset
        )
        return CampaignPage(campaigns=campaigns, total=total, limit=limit, offset=offset)

    async def update(self, campaign_id: str, request: CampaignUpdateRequest) -> Campaign:
        """Apply a partial update; a status change must be a legal transition."""
        campaign = await self.get(campaign_id)

        fields: dict = {}
        if request.status is not None:
            validate_transition(campaign.status, request.status)
            fields["status"] = request.status
        if request.name:
            fields["name"] = request.name
        if request.description is not None:
            fields["description"] = request.description
        if request.scheduled_at is not None:
            fields["scheduled_at"] = request.scheduled_at

        if not fields:
            return campaign
        updated = await self.db.update_campaign_fields(campaign_id, **fields)
        assert updated is not None
        return updated

    async def delete(self, campaign_id: str) -> None:
        """Hard-delete drafts and scheduled campaigns; completed ones are archived as cancelled."""
        campaign = await self.get(campaign_id)

        if campaign.status == CampaignStatus.SENDING:
            raise TransitionError("Cannot delete a campaign that is currently sending")

        if campaign.status == CampaignStatus.COMPLETED:
            await self.db.update_campaign_fields(campaign_id, status=CampaignStatus.CANCELLED)
            logger.info("Archived completed campaign %s as cancelled", campaign_id)
        else:
            await self.db.delete_campaign(campaign_id)
            logger.info("Deleted campaign %s", campaign_id)

    async def get_stats(self, campaign_id: str) -> CampaignStats:
        campaign = await self.get(campaign_id)
        attempts = await self.db.get_campaign_attempts(campaign_id)

        delivered = sum(1 for a in attempts if a.delivered_at is not None)
        clicked = sum(1 for a in attempts if a.clicked_at is not None)

        return CampaignStats(
            total_sent=campaign.total_sent,
            total_delivered=campaign.total_delivered,
            total_clicked=campaign.total_clicked,
            total_converted=campaign.total_converted,
            total_attempts=len(attempts),
            delivered_rate=_pct(delivered, len(attempts)),
            click_rate=_pct(clicked, delivered),
            conversion_rate=_pct(campaign.total_converted, clicked),
        )

    async def estimate_reach(self, filters: TargetFilters) -> int:
        """Number of non-expired leads a campaign with these filters would target."""
        validate_filters(filters)
        _, total = await self.db.query_leads(
            filters.model_copy(update={"limit": 1, "offset": 0}),
            self.clock(), self.settings.max_contacts_per_lead, targeting=True,
        )
        return total
