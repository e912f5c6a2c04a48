"""Tests for campaign definitions - create, update, delete, listing and stats."""

from __future__ import annotations

from datetime import timedelta

import pytest

from dormant_leads.campaigns import CampaignManager
from dormant_leads.core.models import (
    CampaignCreateRequest,
    CampaignStatus,
    CampaignUpdateRequest,
    ContactAttempt,
    TargetFilters,
)
from dormant_leads.errors import NotFoundError, ValidationError
from dormant_leads.state_machine import TransitionError


@pytest.fixture
def manager(db, settings, clock):
    return CampaignManager(db, settings, clock=clock)


class TestCreate:

    async def test_draft_with_defaults(self, manager, add_lead):
        await add_lead("line-a")
        await add_lead("line-b")

        campaign = await manager.create(CampaignCreateRequest(name="Spring buyback"))
        assert campaign.id
        assert campaign.status == CampaignStatus.DRAFT
        assert campaign.estimated_reach == 2
        assert campaign.max_per_hour == 100
        assert campaign.batch_size == 10
        assert campaign.template_id == "default"

    async def test_scheduled_when_send_time_given(self, manager, now):
        campaign = await manager.create(CampaignCreateRequest(
            name="Later", scheduled_at=now + timedelta(days=1),
        ))
        assert campaign.status == CampaignStatus.SCHEDULED
        assert campaign.scheduled_at == now + timedelta(days=1)

    async def test_reach_follows_filters(self, manager, add_lead):
        await add_lead("line-a")
        await add_lead("line-b", swap_days=1)  # held, score 0
        campaign = await manager.create(CampaignCreateRequest(
            name="Strong only", target_filters=TargetFilters(min_score=0.5),
        ))
        assert campaign.estimated_reach == 1
        assert campaign.target_filters.min_score == 0.5

    async def test_reach_uses_minimum_tier(self, db, manager, add_lead):
        low = await add_lead("line-a")
        high = await add_lead("line-b")
        await db.update_lead_fields(low.id, device_tier=1)
        await db.update_lead_fields(high.id, device_tier=4)
        assert await manager.estimate_reach(TargetFilters(tier=2)) == 1
        assert await manager.estimate_reach(TargetFilters(tier=1)) == 2

    async def test_name_required(self, manager):
        with pytest.raises(ValidationError):
            await manager.create(CampaignCreateRequest(name=" "))

    async def test_throttle_must_be_positive(self, manager):
        with pytest.raises(ValidationError):
            await manager.create(CampaignCreateRequest(name="x", max_per_hour=-5))
        with pytest.raises(ValidationError):
            await manager.create(CampaignCreateRequest(name="x", batch_size=-1))

    async def test_bad_filter(self, manager):
        with pytest.raises(ValidationError):
            await manager.create(CampaignCreateRequest(
                name="x", target_filters=TargetFilters(status="nope"),
            ))


class TestReadUpdate:

    async def test_get_unknown(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get("missing")

    async def test_list_and_filter(self, manager, now):
        await manager.create(CampaignCreateRequest(name="a"))
        await manager.create(CampaignCreateRequest(name="b", scheduled_at=now))
        await manager.create(CampaignCreateRequest(name="c"))

        page = await manager.list()
        assert page.total == 3
        drafts = await manager.list(status=CampaignStatus.DRAFT)
        assert drafts.total == 2
        assert {c.name for c in drafts.campaigns} == {"a", "c"}
        limited = await manager.list(limit=1, offset=1)
        assert len(limited.campaigns) == 1
        assert limited.total == 3

    async def test_list_paging_validation(self, manager):
        with pytest.raises(ValidationError):
            await manager.list(limit=0)

    async def test_update_fields_and_status(self, manager, now):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        updated = await manager.update(campaign.id, CampaignUpdateRequest(
            name="renamed",
            description="desc",
            status=CampaignStatus.SCHEDULED,
            scheduled_at=now,
        ))
        assert updated.name == "renamed"
        assert updated.description == "desc"
        assert updated.status == CampaignStatus.SCHEDULED

    async def test_illegal_status_change(self, db, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        await db.update_campaign_fields(campaign.id, status=CampaignStatus.COMPLETED)
        with pytest.raises(TransitionError):
            await manager.update(campaign.id, CampaignUpdateRequest(status=CampaignStatus.DRAFT))

    async def test_empty_update_is_a_no_op(self, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        same = await manager.update(campaign.id, CampaignUpdateRequest())
        assert same.name == "a"


class TestDelete:

    async def test_draft_is_removed(self, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        await manager.delete(campaign.id)
        with pytest.raises(NotFoundError):
            await manager.get(campaign.id)

    async def test_completed_is_archived(self, db, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        await db.update_campaign_fields(campaign.id, status=CampaignStatus.COMPLETED)
        await manager.delete(campaign.id)
        assert (await manager.get(campaign.id)).status == CampaignStatus.CANCELLED

    async def test_sending_cannot_be_deleted(self, db, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        await db.update_campaign_fields(campaign.id, status=CampaignStatus.SENDING)
        with pytest.raises(TransitionError):
            await manager.delete(campaign.id)

    async def test_unknown(self, manager):
        with pytest.raises(NotFoundError):
            await manager.delete("missing")


class TestStats:

    async def test_rates(self, db, manager, add_lead, now):
        lead = await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        for delivered, clicked in ((True, True), (True, False), (False, False)):
            await db.insert_contact_attempt(ContactAttempt(
                lead_id=lead.id,
                campaign_id=campaign.id,
                sent_at=now,
                delivered_at=now if delivered else None,
                clicked_at=now if clicked else None,
            ))
        await db.update_campaign_fields(
            campaign.id, total_sent=3, total_delivered=2, total_converted=1,
        )

        stats = await manager.get_stats(campaign.id)
        assert stats.total_sent == 3
        assert stats.total_attempts == 3
        assert stats.delivered_rate == 66.67
        assert stats.click_rate == 50.0
        assert stats.conversion_rate == 100.0

    async def test_no_attempts(self, manager):
        campaign = await manager.create(CampaignCreateRequest(name="a"))
        stats = await manager.get_stats(campaign.id)
        assert stats.total_attempts == 0
        assert stats.delivered_rate == 0.0
