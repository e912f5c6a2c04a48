"""SQL fragments shared by the SQLite and PostgreSQL backends."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from dormant_leads.core.models import TargetFilters

Placeholder = Callable[[int], str]

# Campaign columns bumped one event at a time
CAMPAIGN_COUNTERS = frozenset({"total_clicked", "total_converted"})


def qmark(_: int) -> str:
    return "?"


def numbered(i: int) -> str:
    return f"${i}"


def utc_iso(dt: datetime) -> str:
    """ISO text in UTC, the on-disk datetime format of the SQLite backend."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def build_lead_filter(
    filters: TargetFilters,
    now: Any,
    max_contacts: int,
    placeholder: Placeholder = qmark,
    targeting: bool = False,
    start: int = 1,
) -> tuple[str, list[Any]]:
    """Translate lead filters into a WHERE clause and its parameters.

    ``targeting`` selects campaign semantics: tier is a minimum and the
    last-active range applies to ``updated_at``. Dashboard queries match the
    tier exactly and filter on ``created_at``.

    ``now`` is passed through as-is, so its type (ISO text or datetime)
    decides how the date-range bounds are rendered.
    """
    clauses: list[str] = []
    params: list[Any] = []

    def add(template: str, value: Any) -> None:
        params.append(value)
        clauses.append(template.format(p=placeholder(start + len(params) - 1)))

    def as_param(value: datetime) -> Any:
        return utc_iso(value) if isinstance(now, str) else value

    if filters.status == "expired":
        add("expires_at < {p}", now)
    else:
        add("expires_at > {p}", now)

    if filters.status == "eligible":
        clauses.append("eligible = TRUE")
        add("contact_count < {p}", max_contacts)
    elif filters.status == "contacted":
        clauses.append("contact_count >= 1")
        clauses.append("converted_at IS NULL")
    elif filters.status == "converted":
        clauses.append("converted_at IS NOT NULL")

    if filters.tier is not None:
        op = ">=" if targeting else "="
        add(f"device_tier {op} {{p}}", filters.tier)

    date_col = "updated_at" if targeting else "created_at"
    if filters.last_active_before is not None:
        add(f"{date_col} <= {{p}}", as_param(filters.last_active_before))
    if filters.last_active_after is not None:
        add(f"{date_col} >= {{p}}", as_param(filters.last_active_after))

    if filters.min_score is not None:
        add("dormant_score >= {p}", filters.min_score)

    return " AND ".join(clauses), params
