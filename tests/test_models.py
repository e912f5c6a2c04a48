"""Tests for Pydantic models, enums and shared SQL fragments."""

from __future__ import annotations

from datetime import datetime, timezone

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    CampaignStatus,
    CohortName,
    ExclusionReason,
    Lead,
    LeadSignals,
    NextAction,
    SwapSignal,
    TargetFilters,
)
from dormant_leads.core.queries import build_lead_filter, numbered, qmark, utc_iso


class TestEnums:

    def test_next_action_values(self):
        assert NextAction.SEND_NUDGE.value == "send_nudge"
        assert NextAction.HOLD.value == "hold"
        assert NextAction.EXCLUDE.value == "exclude"
        assert NextAction.EXPIRED.value == "expired"

    def test_all_exclusion_reasons(self):
        assert len(ExclusionReason) == 9

    def test_all_cohorts(self):
        assert {c.value for c in CohortName} == {
            "high_value", "medium_value", "low_value", "at_risk", "dormant", "churned",
        }

    def test_campaign_statuses(self):
        assert len(CampaignStatus) == 5


class TestLeadModel:

    def test_lead_defaults(self):
        lead = Lead(msisdn_hash="abc")
        assert lead.next_action == NextAction.HOLD
        assert lead.contact_count == 0
        assert lead.exclusions == []
        assert lead.signals.history is None

    def test_signal_shortcuts(self):
        signals = LeadSignals(swap=SwapSignal(days_since_swap=4.5, swap_count_30d=2))
        assert signals.days_since_swap == 4.5
        assert signals.swap_count_30d == 2
        assert signals.days_unreachable == 0.0

    def test_lead_parses_stored_json(self):
        lead = Lead(
            msisdn_hash="abc",
            exclusions=["opt_out"],
            signals={"swap": {"days_since_swap": 3}},
            expires_at="2026-01-01T00:00:00+00:00",
        )
        assert lead.exclusions == [ExclusionReason.OPT_OUT]
        assert lead.signals.days_since_swap == 3
        assert lead.expires_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestSettings:

    def test_sqlite_url(self):
        s = Settings(use_sqlite=True, sqlite_path="x.db")
        assert s.database_url == "sqlite:///x.db"

    def test_postgres_url(self):
        s = Settings(
            use_sqlite=False,
            postgres_user="u",
            postgres_password="p",
            postgres_host="db",
            postgres_port=5433,
            postgres_db="leads",
        )
        assert s.database_url == "postgresql://u:p@db:5433/leads"


class TestLeadFilter:

    def test_default_filter_excludes_expired(self):
        where, params = build_lead_filter(TargetFilters(), "NOW", 2)
        assert where == "expires_at > ?"
        assert params == ["NOW"]

    def test_expired_status(self):
        where, _ = build_lead_filter(TargetFilters(status="expired"), "NOW", 2)
        assert where == "expires_at < ?"

    def test_eligible_status_caps_contacts(self):
        where, params = build_lead_filter(TargetFilters(status="eligible"), "NOW", 2)
        assert "eligible = TRUE" in where
        assert "contact_count < ?" in where
        assert params == ["NOW", 2]

    def test_tier_is_exact_for_dashboards_and_minimum_for_targeting(self):
        where, _ = build_lead_filter(TargetFilters(tier=3), "NOW", 2)
        assert "device_tier = ?" in where
        where, _ = build_lead_filter(TargetFilters(tier=3), "NOW", 2, targeting=True)
        assert "device_tier >= ?" in where

    def test_date_range_column(self):
        after = datetime(2026, 1, 1, tzinfo=timezone.utc)
        where, params = build_lead_filter(TargetFilters(last_active_after=after), "NOW", 2)
        assert "created_at >= ?" in where
        assert params[-1] == utc_iso(after)
        where, _ = build_lead_filter(
            TargetFilters(last_active_after=after), "NOW", 2, targeting=True
        )
        assert "updated_at >= ?" in where

    def test_numbered_placeholders(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        where, params = build_lead_filter(
            TargetFilters(status="eligible", min_score=0.5), now, 2,
            placeholder=numbered, start=1,
        )
        assert where == (
            "expires_at > $1 AND eligible = TRUE AND contact_count < $2 AND dormant_score >= $3"
        )
        assert params == [now, 2, 0.5]

    def test_placeholder_helpers(self):
        assert qmark(7) == "?"
        assert numbered(7) == "$7"

    def test_utc_iso_normalizes_naive_datetimes(self):
        assert utc_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"
