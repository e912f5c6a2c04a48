"""Prefect flows for scheduled lead maintenance tasks."""

from __future__ import annotations

from prefect import flow, task

from dormant_leads.core.config import Settings
from dormant_leads.core.db_factory import create_database
from dormant_leads.dispatch.campaign import CampaignDispatcher
from dormant_leads.dispatch.senders import create_sender
from dormant_leads.reaper import TTLReaper
from dormant_leads.refresh import DailyRefresh
from dormant_leads.signals.camara import create_signal_source
from dormant_leads.signals.normalizer import SignalNormalizer


@task(name="daily-refresh")
async def daily_refresh_task(trigger: str = "cron", triggered_by: str | None = None) -> dict:
    settings = Settings()
    db = create_database(settings)
    source = create_signal_source(settings)
    await db.connect()
    try:
        refresh = DailyRefresh(db, SignalNormalizer(db, source, settings), settings)
        result = await refresh.run(trigger=trigger, triggered_by=triggered_by)
        return result.model_dump()
    finally:
        await source.close()
        await db.close()


@task(name="reap-expired")
async def reap_expired_task() -> dict:
    settings = Settings()
    db = create_database(settings)
    await db.connect()
    try:
        result = await TTLReaper(db, settings).run()
        return result.model_dump()
    finally:
        await db.close()


@task(name="send-campaign")
async def send_campaign_task(campaign_id: str) -> dict:
    settings = Settings()
    db = create_database(settings)
    sender = create_sender(settings)
    await db.connect()
    try:
        result = await CampaignDispatcher(db, sender, settings).send(campaign_id)
        return result.model_dump()
    finally:
        await sender.close()
        await db.close()


@flow(name="daily-lead-maintenance", log_prints=True)
async def daily_maintenance_flow() -> dict:
    """Run all daily maintenance tasks:
    1. Refresh stale leads, detect dormant devices, rebuild cohorts
    2. Purge expired leads and old processed events
    """
    refresh = await daily_refresh_task()
    print(
        f"Refresh run {refresh['worker_run_id']}: "
        f"{refresh['records_processed']} processed, "
        f"{refresh['records_created']} created, "
        f"{refresh['records_updated']} updated"
    )

    reaped = await reap_expired_task()
    print(f"Reaped {reaped['leads_purged']} leads and {reaped['events_purged']} events")

    return {"refresh": refresh, "reaped": reaped}


@flow(name="send-campaign", log_prints=True)
async def send_campaign_flow(campaign_id: str) -> dict:
    result = await send_campaign_task(campaign_id)
    print(f"Campaign {campaign_id}: {result['total_sent']} sent, {result['total_delivered']} delivered")
    return result
