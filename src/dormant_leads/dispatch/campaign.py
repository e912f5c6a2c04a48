"""Throttled campaign dispatch."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from pydantic import BaseModel

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    AttemptStatus,
    Campaign,
    CampaignStatus,
    ContactAttempt,
    DispatchResult,
    Lead,
)
from dormant_leads.dispatch.senders import MessageSender
from dormant_leads.dispatch.templates import DEFAULT_TEMPLATE, DEFAULT_VARIANT, build_message
from dormant_leads.errors import DeliveryError, NotFoundError, ValidationError
from dormant_leads.lead_store import LeadStore
from dormant_leads.state_machine import SENDABLE_STATES, TransitionError

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3600 * 1000


class SendOutcome(BaseModel):
    lead_id: str
    tracking_token: str
    url: str
    delivered: bool


def batch_delay_ms(max_per_hour: int, batch_size: int) -> float:
    """Pause between batches that keeps the hourly volume under ``max_per_hour``."""
    if max_per_hour < 1 or batch_size < 1:
        raise ValidationError("max_per_hour and batch_size must be >= 1")
    return MS_PER_HOUR / (max_per_hour / batch_size)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignDispatcher:
    """Sends a campaign's nudges in batches.

    Sends inside a batch run concurrently; batches never overlap.
    """

    def __init__(
        self,
        db,
        sender: MessageSender,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.sender = sender
        self.settings = settings or Settings()
        self.clock = clock
        self.sleep = sleep
        self.store = LeadStore(db, self.settings, clock=clock)

    async def get_targeted_leads(self, campaign: Campaign) -> list[Lead]:
        """Non-expired leads matching the campaign filters, best score first."""
        filters = campaign.target_filters.model_copy(
            update={"limit": self.settings.target_lead_cap, "offset": 0}
        )
        leads, _ = await self.db.query_leads(
            filters, self.clock(), self.settings.max_contacts_per_lead, targeting=True
        )
        return leads

    async def send(self, campaign_id: str) -> DispatchResult:
        campaign = await self.db.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status not in SENDABLE_STATES:
            raise TransitionError(
                f"Campaign {campaign_id} cannot be sent (status: {campaign.status.value})"
            )
        delay_ms = batch_delay_ms(campaign.max_per_hour, campaign.batch_size)

        leads = await self.get_targeted_leads(campaign)
        logger.info("Found %d leads for campaign %s", len(leads), campaign_id)

        if not leads:
            now = self.clock()
            await self.db.update_campaign_fields(
                campaign_id,
                status=CampaignStatus.COMPLETED,
                sent_at=now,
                completed_at=now,
            )
            return DispatchResult(campaign_id=campaign_id, message="No leads to send")

        await self.db.update_campaign_fields(
            campaign_id, status=CampaignStatus.SENDING, sent_at=self.clock()
        )

        total_sent = 0
        total_delivered = 0
        size = campaign.batch_size
        try:
            for i in range(0, len(leads), size):
                batch = leads[i:i + size]
                outcomes = await asyncio.gather(
                    *(self._send_to_lead(lead, campaign) for lead in batch)
                )
                total_sent += len(outcomes)
                total_delivered += sum(1 for o in outcomes if o.delivered)

                if i + size < len(leads):
                    await self.sleep(delay_ms / 1000)
        except BaseException:
            # Never leave the campaign stuck in sending
            logger.error(
                "Campaign %s aborted after %d sends, marking cancelled",
                campaign_id, total_sent,
            )
            await self.db.update_campaign_fields(
                campaign_id,
                status=CampaignStatus.CANCELLED,
                completed_at=self.clock(),
                total_sent=total_sent,
                total_delivered=total_delivered,
            )
            raise

        await self.db.update_campaign_fields(
            campaign_id,
            status=CampaignStatus.COMPLETED,
            completed_at=self.clock(),
            total_sent=total_sent,
            total_delivered=total_delivered,
        )
        logger.info(
            "Campaign %s completed: %d sent, %d delivered",
            campaign_id, total_sent, total_delivered,
        )
        return DispatchResult(
            campaign_id=campaign_id,
            total_sent=total_sent,
            total_delivered=total_delivered,
        )

    async def _send_to_lead(self, lead: Lead, campaign: Campaign) -> SendOutcome:
        token = str(uuid.uuid4())
        url = f"{self.settings.frontend_base_url.rstrip('/')}/lead/{token}"
        variant = campaign.template_variant or DEFAULT_VARIANT
        message = build_message(campaign.template_id or DEFAULT_TEMPLATE, variant, url)

        sent_at = self.clock()
        try:
            await self.sender.send(lead.msisdn_hash, message)
            delivered = True
        except DeliveryError as e:
            logger.error("Failed to send to %s...: %s", lead.msisdn_hash[:8], e)
            delivered = False
        except Exception as e:
            logger.error(
                "Sender %s crashed on %s...: %r",
                self.sender.sender_name, lead.msisdn_hash[:8], e,
            )
            delivered = False

        await self.db.insert_contact_attempt(ContactAttempt(
            lead_id=lead.id,
            campaign_id=campaign.id,
            channel=campaign.channel,
            template_variant=variant,
            status=AttemptStatus.DELIVERED if delivered else AttemptStatus.FAILED,
            tracking_token=token,
            sent_at=sent_at,
            delivered_at=self.clock() if delivered else None,
        ))
        # Counted whatever the delivery outcome
        await self.store.record_contact(lead.id, sent_at)

        return SendOutcome(lead_id=lead.id, tracking_token=token, url=url, delivered=delivered)
