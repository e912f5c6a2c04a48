"""Database connection and CRUD operations - PostgreSQL backend (asyncpg).

Production database backend using asyncpg connection pool. Schema comes from
migrations/001_dormant_schema.sql (see scripts/init_db.py).
"""

from __future__ import annotations

import enum
import json
from datetime import date, datetime, timezone
from typing import Any

import asyncpg
from pydantic import BaseModel

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    Campaign,
    Cohort,
    CohortMember,
    ContactAttempt,
    Lead,
    NetworkEvent,
    TargetFilters,
    WorkerRun,
)
from dormant_leads.core.queries import CAMPAIGN_COUNTERS, build_lead_filter, numbered


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pg_value(val: Any) -> Any:
    if isinstance(val, enum.Enum):
        return val.value
    if isinstance(val, BaseModel):
        return val.model_dump_json()
    if isinstance(val, list):
        return json.dumps([v.value if isinstance(v, enum.Enum) else v for v in val])
    if isinstance(val, dict):
        return json.dumps(val)
    return val


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    d = dict(row)
    for key, val in d.items():
        # UUID columns come back as uuid.UUID
        if key == "id" or key.endswith("_id"):
            d[key] = str(val) if val is not None else None
    return d


def _loads(val: Any, default: Any) -> Any:
    if val is None:
        return default
    return json.loads(val) if isinstance(val, str) else val


def _row_to_lead(row: asyncpg.Record) -> Lead:
    d = _row_to_dict(row)
    d["exclusions"] = _loads(d["exclusions"], [])
    d["signals"] = _loads(d["signals"], {})
    return Lead(**d)


def _row_to_event(row: asyncpg.Record) -> NetworkEvent:
    d = _row_to_dict(row)
    d["payload"] = _loads(d["payload"], {})
    return NetworkEvent(**d)


def _row_to_campaign(row: asyncpg.Record) -> Campaign:
    d = _row_to_dict(row)
    d["target_filters"] = _loads(d["target_filters"], {})
    return Campaign(**d)


class PostgresDatabase:
    """Async PostgreSQL database connection manager and CRUD operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.settings.database_url, min_size=2, max_size=10,
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def _update_fields(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        touch: bool = True,
        now: datetime | None = None,
    ) -> asyncpg.Record | None:
        set_clauses = []
        values: list[Any] = []
        for i, (key, val) in enumerate(fields.items(), start=1):
            set_clauses.append(f"{key} = ${i}")
            values.append(_pg_value(val))
        if touch:
            values.append(now or _now())
            set_clauses.append(f"updated_at = ${len(values)}")
        if not set_clauses:
            return await self.pool.fetchrow(f"SELECT * FROM {table} WHERE id = $1", row_id)

        n = len(values)
        query = (
            f"UPDATE {table} SET {', '.join(set_clauses)} "
            f"WHERE id = ${n + 1} RETURNING *"
        )
        values.append(row_id)
        return await self.pool.fetchrow(query, *values)

    # -----------------------------------------------------------------------
    # Leads
    # -----------------------------------------------------------------------

    async def upsert_lead_for_day(
        self,
        msisdn_hash: str,
        lead_day: date,
        expires_at: datetime,
        now: datetime | None = None,
        **fields: Any,
    ) -> tuple[Lead, bool]:
        """Insert or update the lead keyed on (msisdn_hash, lead_day).

        ``xmax = 0`` on the returned row tells a fresh insert from an update.
        """
        columns = list(fields.keys())
        values = [_pg_value(fields[c]) for c in columns]
        placeholders = ", ".join(f"${i}" for i in range(5, 5 + len(columns)))
        update_clause = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns + ["updated_at"])
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO leads (
                msisdn_hash, lead_day, expires_at, created_at, updated_at
                {', ' + ', '.join(columns) if columns else ''}
            ) VALUES ($1, $2, $3, $4, $4{', ' + placeholders if columns else ''})
            ON CONFLICT (msisdn_hash, lead_day) DO UPDATE SET {update_clause}
            RETURNING *, (xmax = 0) AS inserted
            """,
            msisdn_hash, lead_day, expires_at, now or _now(), *values,
        )
        d = dict(row)
        inserted = d.pop("inserted")
        lead = _row_to_lead(d)
        return lead, bool(inserted)

    async def get_lead(self, lead_id: str, with_attempts: bool = True) -> Lead | None:
        row = await self.pool.fetchrow("SELECT * FROM leads WHERE id = $1", lead_id)
        if not row:
            return None
        lead = _row_to_lead(row)
        if with_attempts:
            lead.contact_attempts = await self.get_contact_attempts(lead_id)
        return lead

    async def get_latest_lead(self, msisdn_hash: str) -> Lead | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM leads WHERE msisdn_hash = $1 ORDER BY created_at DESC LIMIT 1",
            msisdn_hash,
        )
        return _row_to_lead(row) if row else None

    async def get_recent_leads(
        self, msisdn_hash: str, since: datetime, limit: int = 5
    ) -> list[Lead]:
        rows = await self.pool.fetch(
            "SELECT * FROM leads WHERE msisdn_hash = $1 AND created_at >= $2 "
            "ORDER BY created_at DESC LIMIT $3",
            msisdn_hash, since, limit,
        )
        return [_row_to_lead(r) for r in rows]

    async def update_lead_fields(
        self, lead_id: str, now: datetime | None = None, **fields: Any
    ) -> Lead | None:
        """Update arbitrary fields on a lead, stamping updated_at with ``now``."""
        row = await self._update_fields("leads", lead_id, fields, now=now)
        return _row_to_lead(row) if row else None

    async def increment_contact(self, lead_id: str, at: datetime) -> None:
        await self.pool.execute(
            "UPDATE leads SET contact_count = contact_count + 1, "
            "last_contact_at = $1, updated_at = $1 WHERE id = $2",
            at, lead_id,
        )

    async def delete_expired_leads(self, now: datetime) -> int:
        result = await self.pool.execute("DELETE FROM leads WHERE expires_at < $1", now)
        return int(result.split()[-1])

    async def query_leads(
        self,
        filters: TargetFilters,
        now: datetime,
        max_contacts: int,
        targeting: bool = False,
    ) -> tuple[list[Lead], int]:
        """Filtered lead listing, best score first, with the total match count."""
        where, params = build_lead_filter(
            filters, now, max_contacts, placeholder=numbered, targeting=targeting
        )
        total = await self.pool.fetchval(
            f"SELECT COUNT(*) FROM leads WHERE {where}", *params
        )
        n = len(params)
        rows = await self.pool.fetch(
            f"SELECT * FROM leads WHERE {where} "
            f"ORDER BY dormant_score DESC, created_at ASC LIMIT ${n + 1} OFFSET ${n + 2}",
            *params, filters.limit, filters.offset,
        )
        return [_row_to_lead(r) for r in rows], total or 0

    async def get_eligible_leads(
        self, now: datetime, max_contacts: int, limit: int = 100
    ) -> list[Lead]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM leads
            WHERE eligible = TRUE
            AND next_action = 'send_nudge'
            AND contact_count < $1
            AND expires_at > $2
            ORDER BY dormant_score DESC
            LIMIT $3
            """,
            max_contacts, now, limit,
        )
        return [_row_to_lead(r) for r in rows]

    async def get_stale_active_leads(self, now: datetime, limit: int) -> list[Lead]:
        """Active leads awaiting a nudge or on hold, least recently updated first."""
        rows = await self.pool.fetch(
            """
            SELECT * FROM leads
            WHERE expires_at > $1
            AND next_action IN ('send_nudge', 'hold')
            ORDER BY updated_at ASC
            LIMIT $2
            """,
            now, limit,
        )
        return [_row_to_lead(r) for r in rows]

    async def get_active_leads(self, now: datetime) -> list[Lead]:
        rows = await self.pool.fetch(
            "SELECT * FROM leads WHERE expires_at > $1 ORDER BY created_at ASC", now
        )
        return [_row_to_lead(r) for r in rows]

    async def get_lead_counts(self, now: datetime, max_contacts: int) -> dict[str, int]:
        """Lead counts per dashboard status."""
        row = await self.pool.fetchrow(
            """
            SELECT
                COUNT(*) FILTER (WHERE expires_at > $1) AS total_leads,
                COUNT(*) FILTER (WHERE eligible = TRUE AND contact_count < $2
                    AND expires_at > $1) AS eligible,
                COUNT(*) FILTER (WHERE contact_count >= 1 AND converted_at IS NULL
                    AND expires_at > $1) AS contacted,
                COUNT(*) FILTER (WHERE converted_at IS NOT NULL) AS converted,
                COUNT(*) FILTER (WHERE expires_at < $1) AS expired
            FROM leads
            """,
            now, max_contacts,
        )
        if not row:
            return {}
        return {k: row[k] or 0 for k in ("total_leads", "eligible", "contacted", "converted", "expired")}

    async def get_lead_values(self) -> list[tuple[int | None, float | None]]:
        """(device_tier, estimated_value) for every lead, expired included."""
        rows = await self.pool.fetch("SELECT device_tier, estimated_value FROM leads")
        return [(r["device_tier"], r["estimated_value"]) for r in rows]

    async def get_dormant_stats(self, now: datetime) -> dict[str, Any]:
        row = await self.pool.fetchrow(
            """
            SELECT
                COUNT(*) AS total_leads,
                COUNT(*) FILTER (WHERE eligible = TRUE) AS eligible_leads,
                AVG(dormant_score) AS avg_dormant_score,
                COUNT(*) FILTER (WHERE next_action = 'send_nudge'
                    AND expires_at > $1) AS pending_nudges
            FROM leads
            """,
            now,
        )
        return _row_to_dict(row) if row else {}

    async def mark_lead_converted(self, lead_id: str, at: datetime) -> bool:
        """Stamp converted_at once; False when the lead had already converted."""
        result = await self.pool.execute(
            "UPDATE leads SET converted_at = $1, updated_at = $1 "
            "WHERE id = $2 AND converted_at IS NULL",
            at, lead_id,
        )
        return int(result.split()[-1]) > 0

    # -----------------------------------------------------------------------
    # Contact attempts
    # -----------------------------------------------------------------------

    async def insert_contact_attempt(self, attempt: ContactAttempt) -> ContactAttempt:
        row = await self.pool.fetchrow(
            """
            INSERT INTO contact_attempts (
                lead_id, campaign_id, channel, template_variant, status,
                tracking_token, sent_at, delivered_at, clicked_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            attempt.lead_id, attempt.campaign_id, attempt.channel.value,
            attempt.template_variant, attempt.status.value, attempt.tracking_token,
            attempt.sent_at, attempt.delivered_at, attempt.clicked_at,
        )
        return ContactAttempt(**_row_to_dict(row))

    async def get_contact_attempts(self, lead_id: str) -> list[ContactAttempt]:
        rows = await self.pool.fetch(
            "SELECT * FROM contact_attempts WHERE lead_id = $1 ORDER BY created_at DESC",
            lead_id,
        )
        return [ContactAttempt(**_row_to_dict(r)) for r in rows]

    async def get_campaign_attempts(self, campaign_id: str) -> list[ContactAttempt]:
        rows = await self.pool.fetch(
            "SELECT * FROM contact_attempts WHERE campaign_id = $1 ORDER BY created_at ASC",
            campaign_id,
        )
        return [ContactAttempt(**_row_to_dict(r)) for r in rows]

    async def get_attempt_by_token(self, token: str) -> ContactAttempt | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM contact_attempts WHERE tracking_token = $1", token
        )
        return ContactAttempt(**_row_to_dict(row)) if row else None

    async def mark_attempt_clicked(self, attempt_id: str, at: datetime) -> bool:
        """Stamp the first click on an attempt; False when it was already clicked."""
        result = await self.pool.execute(
            "UPDATE contact_attempts SET clicked_at = $1, status = 'clicked' "
            "WHERE id = $2 AND clicked_at IS NULL",
            at, attempt_id,
        )
        return int(result.split()[-1]) > 0

    # -----------------------------------------------------------------------
    # Opt-outs
    # -----------------------------------------------------------------------

    async def add_opt_out(self, msisdn_hash: str) -> None:
        await self.pool.execute(
            "INSERT INTO opt_outs (msisdn_hash) VALUES ($1) ON CONFLICT DO NOTHING",
            msisdn_hash,
        )

    async def is_opted_out(self, msisdn_hash: str) -> bool:
        found = await self.pool.fetchval(
            "SELECT 1 FROM opt_outs WHERE msisdn_hash = $1", msisdn_hash
        )
        return found is not None

    # -----------------------------------------------------------------------
    # Network events
    # -----------------------------------------------------------------------

    async def insert_network_event(self, event: NetworkEvent) -> str:
        row_id = await self.pool.fetchval(
            """
            INSERT INTO network_events (msisdn_hash, event_type, payload, processed, created_at)
            VALUES ($1, $2, $3, $4, COALESCE($5, now()))
            RETURNING id
            """,
            event.msisdn_hash, event.event_type.value, json.dumps(event.payload),
            event.processed, event.created_at,
        )
        return str(row_id)

    async def get_unprocessed_events(self, limit: int = 1000) -> list[NetworkEvent]:
        rows = await self.pool.fetch(
            "SELECT * FROM network_events WHERE processed = FALSE "
            "ORDER BY created_at ASC LIMIT $1",
            limit,
        )
        return [_row_to_event(r) for r in rows]

    async def mark_events_processed(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self.pool.execute(
            "UPDATE network_events SET processed = TRUE WHERE id = ANY($1::uuid[])",
            event_ids,
        )

    async def delete_processed_events(self, before: datetime) -> int:
        result = await self.pool.execute(
            "DELETE FROM network_events WHERE processed = TRUE AND created_at < $1",
            before,
        )
        return int(result.split()[-1])

    # -----------------------------------------------------------------------
    # Cohorts
    # -----------------------------------------------------------------------

    async def upsert_cohort(self, cohort: Cohort) -> Cohort:
        """Create a cohort definition or refresh it by name."""
        row = await self.pool.fetchrow(
            """
            INSERT INTO cohorts (
                name, description, recency_min, recency_max, frequency_min,
                monetary_min, monetary_max, dormant_score_min, is_active
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, TRUE)
            ON CONFLICT (name) DO UPDATE SET
                description = EXCLUDED.description,
                recency_min = EXCLUDED.recency_min,
                recency_max = EXCLUDED.recency_max,
                frequency_min = EXCLUDED.frequency_min,
                monetary_min = EXCLUDED.monetary_min,
                monetary_max = EXCLUDED.monetary_max,
                dormant_score_min = EXCLUDED.dormant_score_min,
                is_active = TRUE,
                updated_at = now()
            RETURNING *
            """,
            cohort.name.value, cohort.description, cohort.recency_min,
            cohort.recency_max, cohort.frequency_min, cohort.monetary_min,
            cohort.monetary_max, cohort.dormant_score_min,
        )
        return Cohort(**_row_to_dict(row))

    async def get_cohort_by_name(self, name: str) -> Cohort | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM cohorts WHERE name = $1 AND is_active = TRUE", name
        )
        return Cohort(**_row_to_dict(row)) if row else None

    async def list_active_cohorts(self) -> list[Cohort]:
        rows = await self.pool.fetch(
            "SELECT * FROM cohorts WHERE is_active = TRUE ORDER BY member_count DESC, name ASC"
        )
        return [Cohort(**_row_to_dict(r)) for r in rows]

    async def update_cohort_fields(self, cohort_id: str, **fields: Any) -> None:
        await self._update_fields("cohorts", cohort_id, fields)

    async def remove_current_members(self, at: datetime) -> int:
        """Soft-remove every live membership."""
        result = await self.pool.execute(
            "UPDATE cohort_members SET removed_at = $1 WHERE removed_at IS NULL", at
        )
        return int(result.split()[-1])

    async def insert_cohort_member(self, member: CohortMember) -> None:
        await self.pool.execute(
            """
            INSERT INTO cohort_members (
                cohort_id, lead_id, msisdn_hash, recency, frequency,
                monetary, dormant_score, assigned_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, now()))
            """,
            member.cohort_id, member.lead_id, member.msisdn_hash, member.recency,
            member.frequency, member.monetary, member.dormant_score, member.assigned_at,
        )

    async def get_member_aggregates(self, cohort_id: str) -> dict[str, Any]:
        row = await self.pool.fetchrow(
            """
            SELECT COUNT(*) AS member_count,
                   AVG(dormant_score) AS avg_dormant_score,
                   AVG(monetary) AS avg_estimated_value
            FROM cohort_members
            WHERE cohort_id = $1 AND removed_at IS NULL
            """,
            cohort_id,
        )
        return dict(row) if row else {}

    async def list_cohort_members(
        self, cohort_id: str, limit: int, offset: int
    ) -> tuple[list[CohortMember], int]:
        total = await self.pool.fetchval(
            "SELECT COUNT(*) FROM cohort_members WHERE cohort_id = $1 AND removed_at IS NULL",
            cohort_id,
        )
        rows = await self.pool.fetch(
            "SELECT * FROM cohort_members WHERE cohort_id = $1 AND removed_at IS NULL "
            "ORDER BY assigned_at DESC LIMIT $2 OFFSET $3",
            cohort_id, limit, offset,
        )
        return [CohortMember(**_row_to_dict(r)) for r in rows], total or 0

    async def count_removed_members(self) -> int:
        count = await self.pool.fetchval(
            "SELECT COUNT(*) FROM cohort_members WHERE removed_at IS NOT NULL"
        )
        return count or 0

    # -----------------------------------------------------------------------
    # Campaigns
    # -----------------------------------------------------------------------

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        row = await self.pool.fetchrow(
            """
            INSERT INTO campaigns (
                name, description, target_filters, estimated_reach, template_id,
                template_variant, channel, scheduled_at, max_per_hour, batch_size,
                status, created_by
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING *
            """,
            campaign.name, campaign.description,
            campaign.target_filters.model_dump_json(), campaign.estimated_reach,
            campaign.template_id, campaign.template_variant, campaign.channel.value,
            campaign.scheduled_at, campaign.max_per_hour, campaign.batch_size,
            campaign.status.value, campaign.created_by,
        )
        return _row_to_campaign(row)

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        row = await self.pool.fetchrow("SELECT * FROM campaigns WHERE id = $1", campaign_id)
        return _row_to_campaign(row) if row else None

    async def list_campaigns(
        self, status: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Campaign], int]:
        if status:
            total = await self.pool.fetchval(
                "SELECT COUNT(*) FROM campaigns WHERE status = $1", status
            )
            rows = await self.pool.fetch(
                "SELECT * FROM campaigns WHERE status = $1 "
                "ORDER BY created_at DESC LIMIT $2 OFFSET $3",
                status, limit, offset,
            )
        else:
            total = await self.pool.fetchval("SELECT COUNT(*) FROM campaigns")
            rows = await self.pool.fetch(
                "SELECT * FROM campaigns ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                limit, offset,
            )
        return [_row_to_campaign(r) for r in rows], total or 0

    async def update_campaign_fields(self, campaign_id: str, **fields: Any) -> Campaign | None:
        row = await self._update_fields("campaigns", campaign_id, fields)
        return _row_to_campaign(row) if row else None

    async def increment_campaign_counter(
        self, campaign_id: str, counter: str, at: datetime
    ) -> None:
        if counter not in CAMPAIGN_COUNTERS:
            raise ValueError(f"Unknown campaign counter: {counter}")
        await self.pool.execute(
            f"UPDATE campaigns SET {counter} = {counter} + 1, updated_at = $1 WHERE id = $2",
            at, campaign_id,
        )

    async def delete_campaign(self, campaign_id: str) -> None:
        await self.pool.execute("DELETE FROM campaigns WHERE id = $1", campaign_id)

    # -----------------------------------------------------------------------
    # Worker runs
    # -----------------------------------------------------------------------

    async def insert_worker_run(self, run: WorkerRun) -> WorkerRun:
        row = await self.pool.fetchrow(
            """
            INSERT INTO worker_runs (worker_type, status, trigger, triggered_by, started_at)
            VALUES ($1, $2, $3, $4, COALESCE($5, now()))
            RETURNING *
            """,
            run.worker_type, run.status.value, run.trigger, run.triggered_by,
            run.started_at,
        )
        return WorkerRun(**_row_to_dict(row))

    async def get_worker_run(self, run_id: str) -> WorkerRun | None:
        row = await self.pool.fetchrow("SELECT * FROM worker_runs WHERE id = $1", run_id)
        return WorkerRun(**_row_to_dict(row)) if row else None

    async def finish_worker_run(self, run_id: str, **fields: Any) -> None:
        """Finalize a running worker run; completed rows are left untouched."""
        set_clauses = []
        values: list[Any] = []
        for i, (key, val) in enumerate(fields.items(), start=1):
            set_clauses.append(f"{key} = ${i}")
            values.append(_pg_value(val))
        n = len(values)
        await self.pool.execute(
            f"UPDATE worker_runs SET {', '.join(set_clauses)} "
            f"WHERE id = ${n + 1} AND status = 'running'",
            *values, run_id,
        )

    async def list_worker_runs(self, worker_type: str, limit: int = 10) -> list[WorkerRun]:
        rows = await self.pool.fetch(
            "SELECT * FROM worker_runs WHERE worker_type = $1 "
            "ORDER BY started_at DESC LIMIT $2",
            worker_type, limit,
        )
        return [WorkerRun(**_row_to_dict(r)) for r in rows]

    async def get_worker_run_stats(self, worker_type: str) -> dict[str, Any]:
        row = await self.pool.fetchrow(
            """
            SELECT
                COUNT(*) AS total_runs,
                COUNT(*) FILTER (WHERE status = 'completed') AS successful_runs,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed_runs,
                AVG(duration_ms) FILTER (WHERE status = 'completed') AS avg_duration_ms,
                MAX(started_at) AS last_run_at,
                MAX(completed_at) FILTER (WHERE status = 'completed') AS last_success_at
            FROM worker_runs
            WHERE worker_type = $1
            """,
            worker_type,
        )
        return dict(row) if row else {}
