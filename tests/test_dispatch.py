"""Tests for campaign dispatch - throttling, batching, delivery outcomes, senders."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import httpx
import pytest

from dormant_leads.campaigns import CampaignManager
from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    AttemptStatus,
    CampaignCreateRequest,
    CampaignStatus,
    TargetFilters,
)
from dormant_leads.dispatch import (
    CampaignDispatcher,
    MessageSender,
    MockSender,
    SmsApiSender,
    batch_delay_ms,
    create_sender,
)
from dormant_leads.dispatch.templates import TEMPLATES, build_message
from dormant_leads.errors import DeliveryError, NotFoundError, ValidationError
from dormant_leads.state_machine import TransitionError

SMS_URL = "http://sms.test"


class CrashingSender(MessageSender):
    """Sender with a bug: raises something other than DeliveryError."""

    sender_name = "crashing"

    async def send(self, recipient, message):
        raise RuntimeError("unexpected sender bug")


def _sms_response(status, sender, json=None):
    url = f"{SMS_URL}/outbound/{sender}/requests"
    return httpx.Response(status, json=json, request=httpx.Request("POST", url))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_dispatcher(db, settings, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def _make(success_rate: float = 1.0) -> CampaignDispatcher:
        sender = MockSender(success_rate, rng=random.Random(7))
        return CampaignDispatcher(db, sender, settings, clock=clock, sleep=fake_sleep)

    return _make


@pytest.fixture
def manager(db, settings, clock):
    return CampaignManager(db, settings, clock=clock)


class TestThrottle:

    def test_batch_delay(self):
        assert batch_delay_ms(100, 10) == 360_000
        assert batch_delay_ms(3600, 1) == 1000

    def test_invalid_throttle(self):
        with pytest.raises(ValidationError):
            batch_delay_ms(0, 10)
        with pytest.raises(ValidationError):
            batch_delay_ms(100, 0)


class TestSend:

    async def test_sends_in_throttled_batches(self, db, manager, make_dispatcher, add_lead, sleeps):
        leads = [await add_lead(f"line-{i}") for i in range(5)]
        campaign = await manager.create(CampaignCreateRequest(
            name="Batches", max_per_hour=100, batch_size=2, template_variant="B",
        ))

        dispatcher = make_dispatcher()
        result = await dispatcher.send(campaign.id)

        assert result.total_sent == 5
        assert result.total_delivered == 5
        # three batches, two pauses
        assert sleeps == [72.0, 72.0]

        stored = await manager.get(campaign.id)
        assert stored.status == CampaignStatus.COMPLETED
        assert stored.total_sent == 5
        assert stored.sent_at is not None
        assert stored.completed_at is not None

        attempts = await db.get_campaign_attempts(campaign.id)
        assert len(attempts) == 5
        assert {a.status for a in attempts} == {AttemptStatus.DELIVERED}
        assert all(a.template_variant == "B" for a in attempts)
        assert len({a.tracking_token for a in attempts}) == 5

        for lead in leads:
            assert (await db.get_lead(lead.id)).contact_count == 1

    async def test_message_carries_tracking_link(self, manager, make_dispatcher, add_lead, settings):
        await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="Link"))
        dispatcher = make_dispatcher()
        await dispatcher.send(campaign.id)

        [(recipient, message)] = dispatcher.sender.sent
        assert recipient == "line-1"
        assert f"{settings.frontend_base_url}/lead/" in message

    async def test_failed_deliveries_still_count_as_contacts(
        self, db, manager, make_dispatcher, add_lead
    ):
        lead = await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="Fail"))

        result = await make_dispatcher(success_rate=0.0).send(campaign.id)
        assert result.total_sent == 1
        assert result.total_delivered == 0

        [attempt] = await db.get_campaign_attempts(campaign.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.delivered_at is None
        assert (await db.get_lead(lead.id)).contact_count == 1

    async def test_unexpected_sender_error_is_a_failed_attempt(
        self, db, settings, clock, manager, add_lead
    ):
        lead = await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="Crash"))

        dispatcher = CampaignDispatcher(db, CrashingSender(), settings, clock=clock)
        result = await dispatcher.send(campaign.id)
        assert result.total_sent == 1
        assert result.total_delivered == 0

        [attempt] = await db.get_campaign_attempts(campaign.id)
        assert attempt.status == AttemptStatus.FAILED
        assert (await db.get_lead(lead.id)).contact_count == 1
        assert (await manager.get(campaign.id)).status == CampaignStatus.COMPLETED

    async def test_aborted_send_does_not_leave_campaign_sending(
        self, db, manager, make_dispatcher, add_lead, monkeypatch
    ):
        await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="Broken store"))

        async def broken_insert(attempt):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "insert_contact_attempt", broken_insert)
        with pytest.raises(RuntimeError, match="disk full"):
            await make_dispatcher().send(campaign.id)

        stored = await manager.get(campaign.id)
        assert stored.status == CampaignStatus.CANCELLED
        assert stored.completed_at is not None

    async def test_targets_respect_filters(self, manager, make_dispatcher, add_lead):
        await add_lead("line-a")
        await add_lead("line-b", swap_days=1)  # held, score 0
        campaign = await manager.create(CampaignCreateRequest(
            name="Strong", target_filters=TargetFilters(min_score=0.5),
        ))
        result = await make_dispatcher().send(campaign.id)
        assert result.total_sent == 1

    async def test_target_cap(self, settings, manager, make_dispatcher, add_lead):
        settings.target_lead_cap = 2
        for i in range(4):
            await add_lead(f"line-{i}")
        campaign = await manager.create(CampaignCreateRequest(
            name="Capped", target_filters=TargetFilters(limit=50),
        ))
        result = await make_dispatcher().send(campaign.id)
        assert result.total_sent == 2

    async def test_no_leads_completes_immediately(self, manager, make_dispatcher, sleeps):
        campaign = await manager.create(CampaignCreateRequest(name="Empty"))
        result = await make_dispatcher().send(campaign.id)

        assert result.total_sent == 0
        assert result.message == "No leads to send"
        assert (await manager.get(campaign.id)).status == CampaignStatus.COMPLETED
        assert sleeps == []

    async def test_scheduled_campaign_can_be_sent(self, manager, make_dispatcher, add_lead, now):
        await add_lead()
        campaign = await manager.create(CampaignCreateRequest(name="Sched", scheduled_at=now))
        result = await make_dispatcher().send(campaign.id)
        assert result.total_sent == 1

    async def test_completed_campaign_cannot_be_resent(self, manager, make_dispatcher):
        campaign = await manager.create(CampaignCreateRequest(name="Once"))
        dispatcher = make_dispatcher()
        await dispatcher.send(campaign.id)
        with pytest.raises(TransitionError):
            await dispatcher.send(campaign.id)

    async def test_unknown_campaign(self, make_dispatcher):
        with pytest.raises(NotFoundError):
            await make_dispatcher().send("missing")

    async def test_stats_after_send(self, manager, make_dispatcher, add_lead):
        await add_lead("line-a")
        await add_lead("line-b")
        campaign = await manager.create(CampaignCreateRequest(name="Stats"))
        await make_dispatcher().send(campaign.id)

        stats = await manager.get_stats(campaign.id)
        assert stats.total_sent == 2
        assert stats.total_delivered == 2
        assert stats.delivered_rate == 100.0
        assert stats.click_rate == 0.0

    async def test_clicks_on_sent_links_reach_the_stats(
        self, db, manager, make_dispatcher, add_lead, store
    ):
        await add_lead("line-a")
        await add_lead("line-b")
        campaign = await manager.create(CampaignCreateRequest(name="Clicks"))
        await make_dispatcher().send(campaign.id)

        first, _ = await db.get_campaign_attempts(campaign.id)
        await store.record_click(first.tracking_token)
        await store.record_conversion(first.tracking_token)

        stats = await manager.get_stats(campaign.id)
        assert stats.total_clicked == 1
        assert stats.total_converted == 1
        assert stats.click_rate == 50.0
        assert stats.conversion_rate == 100.0


class TestTemplates:

    def test_variant(self):
        message = build_message("default", "C", "http://x/lead/t")
        assert message == TEMPLATES["default"]["C"].format(url="http://x/lead/t")

    def test_unknown_template_and_variant_fall_back(self):
        expected = TEMPLATES["default"]["A"].format(url="u")
        assert build_message("nope", "Z", "u") == expected
        assert build_message(None, None, "u") == expected


class TestSenders:

    def test_mock_sender_success_rate_bounds(self):
        with pytest.raises(ValueError):
            MockSender(1.5)

    async def test_mock_sender_failure(self):
        sender = MockSender(0.0)
        with pytest.raises(DeliveryError):
            await sender.send("abc", "hi")
        assert len(sender.sent) == 0

    async def test_mock_sender_keeps_recent_history_only(self):
        sender = MockSender(1.0, history=2)
        for i in range(5):
            await sender.send(f"line-{i}", "hi")
        assert [recipient for recipient, _ in sender.sent] == ["line-3", "line-4"]

    def test_factory(self):
        assert isinstance(create_sender(Settings(dispatch_mode="mock")), MockSender)
        assert isinstance(create_sender(Settings(dispatch_mode="other")), MockSender)
        assert isinstance(create_sender(Settings(dispatch_mode="live")), SmsApiSender)

    def test_sms_api_client_headers(self):
        sender = SmsApiSender(Settings(sms_api_url=SMS_URL, sms_api_key="key"))
        assert sender.client.headers["Authorization"] == "Bearer key"
        assert str(sender.client.base_url).rstrip("/") == SMS_URL

    async def test_sms_api_sender(self):
        sender = SmsApiSender(Settings(sms_api_url=SMS_URL, sms_api_key="key", sms_sender_name="OrangeFR"))
        sender._client = AsyncMock()
        sender._client.post = AsyncMock(return_value=_sms_response(201, "OrangeFR", {}))
        await sender.send("abc123", "hello")

        args, kwargs = sender._client.post.call_args
        assert args == ("/outbound/OrangeFR/requests",)
        request = kwargs["json"]["outboundSMSMessageRequest"]
        assert request["address"] == ["tel:abc123"]
        assert request["senderAddress"] == "tel:OrangeFR"
        assert request["outboundSMSTextMessage"]["message"] == "hello"

    async def test_sms_api_error(self):
        sender = SmsApiSender(Settings(sms_api_url=SMS_URL, sms_api_key="key", sms_sender_name="Orange"))
        sender._client = AsyncMock()
        sender._client.post = AsyncMock(return_value=_sms_response(500, "Orange"))
        with pytest.raises(DeliveryError, match="500"):
            await sender.send("abc123", "hello")

    async def test_sms_api_connection_error(self):
        sender = SmsApiSender(Settings(sms_api_url=SMS_URL, sms_api_key="key"))
        sender._client = AsyncMock()
        sender._client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(DeliveryError, match="connection"):
            await sender.send("abc123", "hello")

    async def test_sms_api_requires_key(self):
        sender = SmsApiSender(Settings(sms_api_key=""))
        with pytest.raises(DeliveryError):
            await sender.send("abc123", "hello")
