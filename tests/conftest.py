"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dormant_leads.core.config import Settings
from dormant_leads.core.database import Database
from dormant_leads.core.models import (
    CanonicalSignal,
    EventType,
    LineType,
    NetworkEvent,
    ReachabilityObservation,
    SignalMetadata,
    SimSwapObservation,
)
from dormant_leads.lead_store import LeadStore
from dormant_leads.signals.base import ReachabilityStatus, SimSwapStatus

# Close to wall-clock time: campaign and audit rows stamp their own timestamps
NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        use_sqlite=True,
        sqlite_path=str(tmp_path / "test.db"),
        msisdn_hash_salt="test-salt",
    )


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db, settings, clock) -> LeadStore:
    return LeadStore(db, settings, clock=clock)


@pytest.fixture
def make_signal():
    """Factory fixture for canonical signals, relative to NOW."""

    def _make(
        msisdn_hash: str = "line-1",
        swap_days: float = 7,
        occurred: bool = True,
        reachable: bool = False,
        inactive_days: float | None = 7,
        line_type: LineType = LineType.CONSUMER,
        fraud_flag: bool = False,
        **metadata,
    ) -> CanonicalSignal:
        return CanonicalSignal(
            msisdn_hash=msisdn_hash,
            sim_swap=SimSwapObservation(
                occurred=occurred,
                ts=NOW - timedelta(days=swap_days),
            ),
            old_device_reachability=ReachabilityObservation(
                reachable=reachable,
                checked_ts=NOW,
                last_activity_ts=(
                    NOW - timedelta(days=inactive_days) if inactive_days is not None else None
                ),
            ),
            line_type=line_type,
            fraud_flag=fraud_flag,
            metadata=SignalMetadata(**metadata),
        )

    return _make


@pytest.fixture
def make_event():
    """Factory fixture for raw network events with well-formed payloads."""

    def _make(
        line_hash: str = "line-1",
        event_type: EventType = EventType.SIM_SWAP,
        age_days: float = 0,
        **status,
    ) -> NetworkEvent:
        if event_type == EventType.SIM_SWAP:
            payload = SimSwapStatus(**status).model_dump(mode="json")
        else:
            payload = ReachabilityStatus(**status).model_dump(mode="json")
        return NetworkEvent(
            msisdn_hash=line_hash,
            event_type=event_type,
            payload=payload,
            created_at=NOW - timedelta(days=age_days),
        )

    return _make


@pytest.fixture
def add_lead(store, make_signal):
    """Evaluate a signal through the store and return the persisted lead."""

    async def _add(msisdn_hash: str = "line-1", **kwargs):
        output = await store.evaluate_and_store(make_signal(msisdn_hash=msisdn_hash, **kwargs))
        return await store.get_lead(output.lead_id)

    return _add
