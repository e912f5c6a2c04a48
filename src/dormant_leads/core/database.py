"""Database connection and CRUD operations - SQLite backend.

Zero-install database backend using aiosqlite. Auto-creates schema on connect.
"""

from __future__ import annotations

import enum
import json
import sqlite3
import uuid
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite
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
from dormant_leads.core.queries import CAMPAIGN_COUNTERS, build_lead_filter, utc_iso


# ---------------------------------------------------------------------------
# SQLite schema (auto-created on first connect)
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS leads (
    id                      TEXT PRIMARY KEY,
    msisdn_hash             TEXT NOT NULL,
    lead_day                TEXT NOT NULL,
    dormant_score           REAL NOT NULL DEFAULT 0,
    eligible                INTEGER NOT NULL DEFAULT 0,
    activation_window_days  INTEGER NOT NULL DEFAULT 1,
    next_action             TEXT NOT NULL DEFAULT 'hold',
    exclusions              TEXT NOT NULL DEFAULT '[]',
    signals                 TEXT NOT NULL DEFAULT '{}',
    contact_count           INTEGER NOT NULL DEFAULT 0,
    last_contact_at         TEXT,
    estimated_value         REAL,
    device_tier             INTEGER,
    converted_at            TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT NOT NULL,
    expires_at              TEXT NOT NULL,
    UNIQUE(msisdn_hash, lead_day)
);

CREATE TABLE IF NOT EXISTS contact_attempts (
    id                  TEXT PRIMARY KEY,
    lead_id             TEXT NOT NULL REFERENCES leads(id) ON DELETE CASCADE,
    campaign_id         TEXT,
    channel             TEXT NOT NULL DEFAULT 'sms',
    template_variant    TEXT,
    status              TEXT NOT NULL DEFAULT 'sent',
    tracking_token      TEXT,
    sent_at             TEXT,
    delivered_at        TEXT,
    clicked_at          TEXT,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS opt_outs (
    msisdn_hash         TEXT PRIMARY KEY,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS network_events (
    id                  TEXT PRIMARY KEY,
    msisdn_hash         TEXT NOT NULL,
    event_type          TEXT NOT NULL,
    payload             TEXT NOT NULL DEFAULT '{}',
    processed           INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cohorts (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL UNIQUE,
    description         TEXT,
    recency_min         REAL,
    recency_max         REAL,
    frequency_min       INTEGER,
    monetary_min        REAL,
    monetary_max        REAL,
    dormant_score_min   REAL,
    is_active           INTEGER NOT NULL DEFAULT 1,
    member_count        INTEGER NOT NULL DEFAULT 0,
    avg_dormant_score   REAL,
    avg_estimated_value REAL,
    last_refresh_at     TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cohort_members (
    id                  TEXT PRIMARY KEY,
    cohort_id           TEXT NOT NULL REFERENCES cohorts(id) ON DELETE CASCADE,
    lead_id             TEXT NOT NULL,
    msisdn_hash         TEXT NOT NULL,
    recency             REAL NOT NULL,
    frequency           INTEGER NOT NULL,
    monetary            REAL NOT NULL,
    dormant_score       REAL NOT NULL,
    assigned_at         TEXT NOT NULL,
    removed_at          TEXT
);

CREATE TABLE IF NOT EXISTS campaigns (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    description         TEXT,
    target_filters      TEXT NOT NULL DEFAULT '{}',
    estimated_reach     INTEGER,
    template_id         TEXT NOT NULL DEFAULT 'default',
    template_variant    TEXT,
    channel             TEXT NOT NULL DEFAULT 'sms',
    scheduled_at        TEXT,
    sent_at             TEXT,
    completed_at        TEXT,
    max_per_hour        INTEGER NOT NULL DEFAULT 100,
    batch_size          INTEGER NOT NULL DEFAULT 10,
    status              TEXT NOT NULL DEFAULT 'draft',
    total_sent          INTEGER NOT NULL DEFAULT 0,
    total_delivered     INTEGER NOT NULL DEFAULT 0,
    total_clicked       INTEGER NOT NULL DEFAULT 0,
    total_converted     INTEGER NOT NULL DEFAULT 0,
    created_by          TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS worker_runs (
    id                  TEXT PRIMARY KEY,
    worker_type         TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'running',
    trigger             TEXT NOT NULL DEFAULT 'cron',
    triggered_by        TEXT,
    started_at          TEXT NOT NULL,
    completed_at        TEXT,
    duration_ms         INTEGER,
    records_processed   INTEGER NOT NULL DEFAULT 0,
    records_created     INTEGER NOT NULL DEFAULT 0,
    records_updated     INTEGER NOT NULL DEFAULT 0,
    records_failed      INTEGER NOT NULL DEFAULT 0,
    error_message       TEXT,
    error_stack         TEXT
);

CREATE INDEX IF NOT EXISTS idx_leads_hash ON leads(msisdn_hash);
CREATE INDEX IF NOT EXISTS idx_leads_expires ON leads(expires_at);
CREATE INDEX IF NOT EXISTS idx_leads_action ON leads(next_action);
CREATE INDEX IF NOT EXISTS idx_leads_score ON leads(dormant_score);
CREATE INDEX IF NOT EXISTS idx_attempts_lead ON contact_attempts(lead_id);
CREATE INDEX IF NOT EXISTS idx_attempts_campaign ON contact_attempts(campaign_id);
CREATE INDEX IF NOT EXISTS idx_attempts_token ON contact_attempts(tracking_token);
CREATE INDEX IF NOT EXISTS idx_events_processed ON network_events(processed, created_at);
CREATE INDEX IF NOT EXISTS idx_events_hash ON network_events(msisdn_hash);
CREATE INDEX IF NOT EXISTS idx_members_cohort ON cohort_members(cohort_id, removed_at);
CREATE INDEX IF NOT EXISTS idx_campaigns_status ON campaigns(status);
CREATE INDEX IF NOT EXISTS idx_worker_runs_type ON worker_runs(worker_type, started_at);
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_str() -> str:
    return _now().isoformat()


def _dt_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return utc_iso(dt)


def _db_value(val: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(val, enum.Enum):
        return val.value
    if isinstance(val, datetime):
        return utc_iso(val)
    if isinstance(val, date):
        return val.isoformat()
    if isinstance(val, bool):
        return int(val)
    if isinstance(val, BaseModel):
        return val.model_dump_json()
    if isinstance(val, (dict, list)):
        return json.dumps([_json_item(v) for v in val] if isinstance(val, list) else val)
    return val


def _json_item(val: Any) -> Any:
    return val.value if isinstance(val, enum.Enum) else val


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert sqlite3.Row to a plain dict."""
    return {k: row[k] for k in row.keys()}


def _row_to_lead(row: sqlite3.Row) -> Lead:
    d = _row_to_dict(row)
    d["exclusions"] = json.loads(d["exclusions"] or "[]")
    d["signals"] = json.loads(d["signals"] or "{}")
    return Lead(**d)


def _row_to_event(row: sqlite3.Row) -> NetworkEvent:
    d = _row_to_dict(row)
    d["payload"] = json.loads(d["payload"] or "{}")
    return NetworkEvent(**d)


def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    d = _row_to_dict(row)
    d["target_filters"] = json.loads(d["target_filters"] or "{}")
    return Campaign(**d)


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------


class Database:
    """Async SQLite database connection manager and CRUD operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._conn: aiosqlite.Connection | None = None

    def _resolve_path(self) -> str:
        url = self.settings.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):]
        return url

    async def connect(self) -> None:
        path = self._resolve_path()
        self._conn = await aiosqlite.connect(path)
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._init_schema()

    async def _init_schema(self) -> None:
        """Auto-create tables if they don't exist."""
        await self.conn.executescript(SCHEMA_SQL)
        await self.conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def _update_fields(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        touch: bool = True,
        now: datetime | None = None,
    ) -> None:
        set_clauses = []
        values: list[Any] = []
        for key, val in fields.items():
            set_clauses.append(f"{key} = ?")
            values.append(_db_value(val))
        if touch:
            set_clauses.append("updated_at = ?")
            values.append(_dt_str(now) or _now_str())
        if not set_clauses:
            return
        values.append(row_id)
        await self.conn.execute(
            f"UPDATE {table} SET {', '.join(set_clauses)} WHERE id = ?", values
        )
        await self.conn.commit()

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

        Single statement, so concurrent evaluations of the same line on the
        same day cannot create two rows. Returns the lead and whether it was
        inserted.
        """
        new_id = str(uuid.uuid4())
        now = _dt_str(now) or _now_str()
        columns = list(fields.keys())
        values = [_db_value(fields[c]) for c in columns]
        update_clause = ", ".join(f"{c} = excluded.{c}" for c in columns)
        update_clause = f"{update_clause}, updated_at = excluded.updated_at" if columns else "updated_at = excluded.updated_at"
        placeholders = ", ".join("?" for _ in columns)
        cursor = await self.conn.execute(
            f"""
            INSERT INTO leads (
                id, msisdn_hash, lead_day, expires_at, created_at, updated_at
                {', ' + ', '.join(columns) if columns else ''}
            ) VALUES (?, ?, ?, ?, ?, ?{', ' + placeholders if columns else ''})
            ON CONFLICT (msisdn_hash, lead_day) DO UPDATE SET {update_clause}
            RETURNING id
            """,
            [new_id, msisdn_hash, lead_day.isoformat(), _dt_str(expires_at), now, now] + values,
        )
        row = await cursor.fetchone()
        await self.conn.commit()
        lead_id = row["id"]
        lead = await self.get_lead(lead_id, with_attempts=False)
        assert lead is not None
        return lead, lead_id == new_id

    async def get_lead(self, lead_id: str, with_attempts: bool = True) -> Lead | None:
        cursor = await self.conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        lead = _row_to_lead(row)
        if with_attempts:
            lead.contact_attempts = await self.get_contact_attempts(lead_id)
        return lead

    async def get_latest_lead(self, msisdn_hash: str) -> Lead | None:
        cursor = await self.conn.execute(
            "SELECT * FROM leads WHERE msisdn_hash = ? ORDER BY created_at DESC LIMIT 1",
            (msisdn_hash,),
        )
        row = await cursor.fetchone()
        return _row_to_lead(row) if row else None

    async def get_recent_leads(
        self, msisdn_hash: str, since: datetime, limit: int = 5
    ) -> list[Lead]:
        cursor = await self.conn.execute(
            "SELECT * FROM leads WHERE msisdn_hash = ? AND created_at >= ? "
            "ORDER BY created_at DESC LIMIT ?",
            (msisdn_hash, _dt_str(since), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_lead(r) for r in rows]

    async def update_lead_fields(
        self, lead_id: str, now: datetime | None = None, **fields: Any
    ) -> Lead | None:
        """Update arbitrary fields on a lead, stamping updated_at with ``now``."""
        await self._update_fields("leads", lead_id, fields, now=now)
        return await self.get_lead(lead_id, with_attempts=False)

    async def increment_contact(self, lead_id: str, at: datetime) -> None:
        await self.conn.execute(
            "UPDATE leads SET contact_count = contact_count + 1, "
            "last_contact_at = ?, updated_at = ? WHERE id = ?",
            (_dt_str(at), _dt_str(at), lead_id),
        )
        await self.conn.commit()

    async def delete_expired_leads(self, now: datetime) -> int:
        cursor = await self.conn.execute(
            "DELETE FROM leads WHERE expires_at < ?", (_dt_str(now),)
        )
        await self.conn.commit()
        return cursor.rowcount

    async def query_leads(
        self,
        filters: TargetFilters,
        now: datetime,
        max_contacts: int,
        targeting: bool = False,
    ) -> tuple[list[Lead], int]:
        """Filtered lead listing, best score first, with the total match count."""
        where, params = build_lead_filter(
            filters, _dt_str(now), max_contacts, targeting=targeting
        )
        cursor = await self.conn.execute(
            f"SELECT COUNT(*) AS total FROM leads WHERE {where}", params
        )
        count_row = await cursor.fetchone()
        total = count_row["total"] if count_row else 0

        cursor = await self.conn.execute(
            f"SELECT * FROM leads WHERE {where} "
            f"ORDER BY dormant_score DESC, created_at ASC LIMIT ? OFFSET ?",
            params + [filters.limit, filters.offset],
        )
        rows = await cursor.fetchall()
        return [_row_to_lead(r) for r in rows], total

    async def get_eligible_leads(
        self, now: datetime, max_contacts: int, limit: int = 100
    ) -> list[Lead]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM leads
            WHERE eligible = 1
            AND next_action = 'send_nudge'
            AND contact_count < ?
            AND expires_at > ?
            ORDER BY dormant_score DESC
            LIMIT ?
            """,
            (max_contacts, _dt_str(now), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_lead(r) for r in rows]

    async def get_stale_active_leads(self, now: datetime, limit: int) -> list[Lead]:
        """Active leads awaiting a nudge or on hold, least recently updated first."""
        cursor = await self.conn.execute(
            """
            SELECT * FROM leads
            WHERE expires_at > ?
            AND next_action IN ('send_nudge', 'hold')
            ORDER BY updated_at ASC
            LIMIT ?
            """,
            (_dt_str(now), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_lead(r) for r in rows]

    async def get_active_leads(self, now: datetime) -> list[Lead]:
        cursor = await self.conn.execute(
            "SELECT * FROM leads WHERE expires_at > ? ORDER BY created_at ASC",
            (_dt_str(now),),
        )
        rows = await cursor.fetchall()
        return [_row_to_lead(r) for r in rows]

    async def get_lead_counts(self, now: datetime, max_contacts: int) -> dict[str, int]:
        """Lead counts per dashboard status."""
        n = _dt_str(now)
        cursor = await self.conn.execute(
            """
            SELECT
                SUM(CASE WHEN expires_at > ? THEN 1 ELSE 0 END) AS total_leads,
                SUM(CASE WHEN eligible = 1 AND contact_count < ? AND expires_at > ?
                    THEN 1 ELSE 0 END) AS eligible,
                SUM(CASE WHEN contact_count >= 1 AND converted_at IS NULL AND expires_at > ?
                    THEN 1 ELSE 0 END) AS contacted,
                SUM(CASE WHEN converted_at IS NOT NULL THEN 1 ELSE 0 END) AS converted,
                SUM(CASE WHEN expires_at < ? THEN 1 ELSE 0 END) AS expired
            FROM leads
            """,
            (n, max_contacts, n, n, n),
        )
        row = await cursor.fetchone()
        if not row:
            return {}
        return {k: row[k] or 0 for k in ("total_leads", "eligible", "contacted", "converted", "expired")}

    async def get_lead_values(self) -> list[tuple[int | None, float | None]]:
        """(device_tier, estimated_value) for every lead, expired included."""
        cursor = await self.conn.execute("SELECT device_tier, estimated_value FROM leads")
        rows = await cursor.fetchall()
        return [(r["device_tier"], r["estimated_value"]) for r in rows]

    async def get_dormant_stats(self, now: datetime) -> dict[str, Any]:
        cursor = await self.conn.execute(
            """
            SELECT
                COUNT(*) AS total_leads,
                SUM(CASE WHEN eligible = 1 THEN 1 ELSE 0 END) AS eligible_leads,
                AVG(dormant_score) AS avg_dormant_score,
                SUM(CASE WHEN next_action = 'send_nudge' AND expires_at > ?
                    THEN 1 ELSE 0 END) AS pending_nudges
            FROM leads
            """,
            (_dt_str(now),),
        )
        row = await cursor.fetchone()
        return _row_to_dict(row) if row else {}

    async def mark_lead_converted(self, lead_id: str, at: datetime) -> bool:
        """Stamp converted_at once; False when the lead had already converted."""
        cursor = await self.conn.execute(
            "UPDATE leads SET converted_at = ?, updated_at = ? "
            "WHERE id = ? AND converted_at IS NULL",
            (_dt_str(at), _dt_str(at), lead_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    # -----------------------------------------------------------------------
    # Contact attempts
    # -----------------------------------------------------------------------

    async def insert_contact_attempt(self, attempt: ContactAttempt) -> ContactAttempt:
        row_id = str(uuid.uuid4())
        now = _now_str()
        await self.conn.execute(
            """
            INSERT INTO contact_attempts (
                id, lead_id, campaign_id, channel, template_variant, status,
                tracking_token, sent_at, delivered_at, clicked_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id, attempt.lead_id, attempt.campaign_id, attempt.channel.value,
                attempt.template_variant, attempt.status.value, attempt.tracking_token,
                _dt_str(attempt.sent_at), _dt_str(attempt.delivered_at),
                _dt_str(attempt.clicked_at), now,
            ),
        )
        await self.conn.commit()
        return attempt.model_copy(update={"id": row_id, "created_at": now})

    async def get_contact_attempts(self, lead_id: str) -> list[ContactAttempt]:
        cursor = await self.conn.execute(
            "SELECT * FROM contact_attempts WHERE lead_id = ? ORDER BY created_at DESC",
            (lead_id,),
        )
        rows = await cursor.fetchall()
        return [ContactAttempt(**_row_to_dict(r)) for r in rows]

    async def get_campaign_attempts(self, campaign_id: str) -> list[ContactAttempt]:
        cursor = await self.conn.execute(
            "SELECT * FROM contact_attempts WHERE campaign_id = ? ORDER BY created_at ASC",
            (campaign_id,),
        )
        rows = await cursor.fetchall()
        return [ContactAttempt(**_row_to_dict(r)) for r in rows]

    async def get_attempt_by_token(self, token: str) -> ContactAttempt | None:
        cursor = await self.conn.execute(
            "SELECT * FROM contact_attempts WHERE tracking_token = ?", (token,)
        )
        row = await cursor.fetchone()
        return ContactAttempt(**_row_to_dict(row)) if row else None

    async def mark_attempt_clicked(self, attempt_id: str, at: datetime) -> bool:
        """Stamp the first click on an attempt; False when it was already clicked."""
        cursor = await self.conn.execute(
            "UPDATE contact_attempts SET clicked_at = ?, status = 'clicked' "
            "WHERE id = ? AND clicked_at IS NULL",
            (_dt_str(at), attempt_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    # -----------------------------------------------------------------------
    # Opt-outs
    # -----------------------------------------------------------------------

    async def add_opt_out(self, msisdn_hash: str) -> None:
        await self.conn.execute(
            "INSERT OR IGNORE INTO opt_outs (msisdn_hash, created_at) VALUES (?, ?)",
            (msisdn_hash, _now_str()),
        )
        await self.conn.commit()

    async def is_opted_out(self, msisdn_hash: str) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM opt_outs WHERE msisdn_hash = ?", (msisdn_hash,)
        )
        return await cursor.fetchone() is not None

    # -----------------------------------------------------------------------
    # Network events
    # -----------------------------------------------------------------------

    async def insert_network_event(self, event: NetworkEvent) -> str:
        row_id = str(uuid.uuid4())
        await self.conn.execute(
            """
            INSERT INTO network_events (id, msisdn_hash, event_type, payload, processed, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                row_id,
                event.msisdn_hash,
                event.event_type.value,
                json.dumps(event.payload),
                int(event.processed),
                _dt_str(event.created_at) or _now_str(),
            ),
        )
        await self.conn.commit()
        return row_id

    async def get_unprocessed_events(self, limit: int = 1000) -> list[NetworkEvent]:
        cursor = await self.conn.execute(
            "SELECT * FROM network_events WHERE processed = 0 "
            "ORDER BY created_at ASC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_row_to_event(r) for r in rows]

    async def mark_events_processed(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        placeholders = ", ".join("?" for _ in event_ids)
        await self.conn.execute(
            f"UPDATE network_events SET processed = 1 WHERE id IN ({placeholders})",
            event_ids,
        )
        await self.conn.commit()

    async def delete_processed_events(self, before: datetime) -> int:
        cursor = await self.conn.execute(
            "DELETE FROM network_events WHERE processed = 1 AND created_at < ?",
            (_dt_str(before),),
        )
        await self.conn.commit()
        return cursor.rowcount

    # -----------------------------------------------------------------------
    # Cohorts
    # -----------------------------------------------------------------------

    async def upsert_cohort(self, cohort: Cohort) -> Cohort:
        """Create a cohort definition or refresh it by name."""
        now = _now_str()
        await self.conn.execute(
            """
            INSERT INTO cohorts (
                id, name, description, recency_min, recency_max, frequency_min,
                monetary_min, monetary_max, dormant_score_min, is_active,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT (name) DO UPDATE SET
                description = excluded.description,
                recency_min = excluded.recency_min,
                recency_max = excluded.recency_max,
                frequency_min = excluded.frequency_min,
                monetary_min = excluded.monetary_min,
                monetary_max = excluded.monetary_max,
                dormant_score_min = excluded.dormant_score_min,
                is_active = 1,
                updated_at = excluded.updated_at
            """,
            (
                str(uuid.uuid4()), cohort.name.value, cohort.description,
                cohort.recency_min, cohort.recency_max, cohort.frequency_min,
                cohort.monetary_min, cohort.monetary_max, cohort.dormant_score_min,
                now, now,
            ),
        )
        await self.conn.commit()
        result = await self.get_cohort_by_name(cohort.name.value)
        assert result is not None
        return result

    async def get_cohort_by_name(self, name: str) -> Cohort | None:
        cursor = await self.conn.execute(
            "SELECT * FROM cohorts WHERE name = ? AND is_active = 1", (name,)
        )
        row = await cursor.fetchone()
        return Cohort(**_row_to_dict(row)) if row else None

    async def list_active_cohorts(self) -> list[Cohort]:
        cursor = await self.conn.execute(
            "SELECT * FROM cohorts WHERE is_active = 1 ORDER BY member_count DESC, name ASC"
        )
        rows = await cursor.fetchall()
        return [Cohort(**_row_to_dict(r)) for r in rows]

    async def update_cohort_fields(self, cohort_id: str, **fields: Any) -> None:
        await self._update_fields("cohorts", cohort_id, fields)

    async def remove_current_members(self, at: datetime) -> int:
        """Soft-remove every live membership."""
        cursor = await self.conn.execute(
            "UPDATE cohort_members SET removed_at = ? WHERE removed_at IS NULL",
            (_dt_str(at),),
        )
        await self.conn.commit()
        return cursor.rowcount

    async def insert_cohort_member(self, member: CohortMember) -> None:
        await self.conn.execute(
            """
            INSERT INTO cohort_members (
                id, cohort_id, lead_id, msisdn_hash, recency, frequency,
                monetary, dormant_score, assigned_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()), member.cohort_id, member.lead_id, member.msisdn_hash,
                member.recency, member.frequency, member.monetary, member.dormant_score,
                _dt_str(member.assigned_at) or _now_str(),
            ),
        )
        await self.conn.commit()

    async def get_member_aggregates(self, cohort_id: str) -> dict[str, Any]:
        cursor = await self.conn.execute(
            """
            SELECT COUNT(*) AS member_count,
                   AVG(dormant_score) AS avg_dormant_score,
                   AVG(monetary) AS avg_estimated_value
            FROM cohort_members
            WHERE cohort_id = ? AND removed_at IS NULL
            """,
            (cohort_id,),
        )
        row = await cursor.fetchone()
        return _row_to_dict(row) if row else {}

    async def list_cohort_members(
        self, cohort_id: str, limit: int, offset: int
    ) -> tuple[list[CohortMember], int]:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS total FROM cohort_members "
            "WHERE cohort_id = ? AND removed_at IS NULL",
            (cohort_id,),
        )
        count_row = await cursor.fetchone()
        total = count_row["total"] if count_row else 0
        cursor = await self.conn.execute(
            "SELECT * FROM cohort_members WHERE cohort_id = ? AND removed_at IS NULL "
            "ORDER BY assigned_at DESC LIMIT ? OFFSET ?",
            (cohort_id, limit, offset),
        )
        rows = await cursor.fetchall()
        return [CohortMember(**_row_to_dict(r)) for r in rows], total

    async def count_removed_members(self) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) AS n FROM cohort_members WHERE removed_at IS NOT NULL"
        )
        row = await cursor.fetchone()
        return row["n"] if row else 0

    # -----------------------------------------------------------------------
    # Campaigns
    # -----------------------------------------------------------------------

    async def insert_campaign(self, campaign: Campaign) -> Campaign:
        row_id = str(uuid.uuid4())
        now = _now_str()
        await self.conn.execute(
            """
            INSERT INTO campaigns (
                id, name, description, target_filters, estimated_reach, template_id,
                template_variant, channel, scheduled_at, max_per_hour, batch_size,
                status, created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id, campaign.name, campaign.description,
                campaign.target_filters.model_dump_json(), campaign.estimated_reach,
                campaign.template_id, campaign.template_variant, campaign.channel.value,
                _dt_str(campaign.scheduled_at), campaign.max_per_hour, campaign.batch_size,
                campaign.status.value, campaign.created_by, now, now,
            ),
        )
        await self.conn.commit()
        result = await self.get_campaign(row_id)
        assert result is not None
        return result

    async def get_campaign(self, campaign_id: str) -> Campaign | None:
        cursor = await self.conn.execute(
            "SELECT * FROM campaigns WHERE id = ?", (campaign_id,)
        )
        row = await cursor.fetchone()
        return _row_to_campaign(row) if row else None

    async def list_campaigns(
        self, status: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Campaign], int]:
        where = "WHERE status = ?" if status else ""
        params: list[Any] = [status] if status else []
        cursor = await self.conn.execute(
            f"SELECT COUNT(*) AS total FROM campaigns {where}", params
        )
        count_row = await cursor.fetchone()
        total = count_row["total"] if count_row else 0
        cursor = await self.conn.execute(
            f"SELECT * FROM campaigns {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        rows = await cursor.fetchall()
        return [_row_to_campaign(r) for r in rows], total

    async def update_campaign_fields(self, campaign_id: str, **fields: Any) -> Campaign | None:
        await self._update_fields("campaigns", campaign_id, fields)
        return await self.get_campaign(campaign_id)

    async def increment_campaign_counter(
        self, campaign_id: str, counter: str, at: datetime
    ) -> None:
        if counter not in CAMPAIGN_COUNTERS:
            raise ValueError(f"Unknown campaign counter: {counter}")
        await self.conn.execute(
            f"UPDATE campaigns SET {counter} = {counter} + 1, updated_at = ? WHERE id = ?",
            (_dt_str(at), campaign_id),
        )
        await self.conn.commit()

    async def delete_campaign(self, campaign_id: str) -> None:
        await self.conn.execute("DELETE FROM campaigns WHERE id = ?", (campaign_id,))
        await self.conn.commit()

    # -----------------------------------------------------------------------
    # Worker runs
    # -----------------------------------------------------------------------

    async def insert_worker_run(self, run: WorkerRun) -> WorkerRun:
        row_id = str(uuid.uuid4())
        await self.conn.execute(
            """
            INSERT INTO worker_runs (id, worker_type, status, trigger, triggered_by, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                row_id, run.worker_type, run.status.value, run.trigger,
                run.triggered_by, _dt_str(run.started_at) or _now_str(),
            ),
        )
        await self.conn.commit()
        result = await self.get_worker_run(row_id)
        assert result is not None
        return result

    async def get_worker_run(self, run_id: str) -> WorkerRun | None:
        cursor = await self.conn.execute("SELECT * FROM worker_runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        return WorkerRun(**_row_to_dict(row)) if row else None

    async def finish_worker_run(self, run_id: str, **fields: Any) -> None:
        """Finalize a running worker run; completed rows are left untouched."""
        set_clauses = [f"{k} = ?" for k in fields]
        values = [_db_value(v) for v in fields.values()]
        await self.conn.execute(
            f"UPDATE worker_runs SET {', '.join(set_clauses)} "
            f"WHERE id = ? AND status = 'running'",
            values + [run_id],
        )
        await self.conn.commit()

    async def list_worker_runs(self, worker_type: str, limit: int = 10) -> list[WorkerRun]:
        cursor = await self.conn.execute(
            "SELECT * FROM worker_runs WHERE worker_type = ? "
            "ORDER BY started_at DESC LIMIT ?",
            (worker_type, limit),
        )
        rows = await cursor.fetchall()
        return [WorkerRun(**_row_to_dict(r)) for r in rows]

    async def get_worker_run_stats(self, worker_type: str) -> dict[str, Any]:
        cursor = await self.conn.execute(
            """
            SELECT
                COUNT(*) AS total_runs,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful_runs,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed_runs,
                AVG(CASE WHEN status = 'completed' THEN duration_ms END) AS avg_duration_ms,
                MAX(started_at) AS last_run_at,
                MAX(CASE WHEN status = 'completed' THEN completed_at END) AS last_success_at
            FROM worker_runs
            WHERE worker_type = ?
            """,
            (worker_type,),
        )
        row = await cursor.fetchone()
        return _row_to_dict(row) if row else {}
