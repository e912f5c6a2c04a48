"""Core modules: models, database, config."""

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    Campaign,
    CanonicalSignal,
    Cohort,
    CohortMember,
    ContactAttempt,
    Lead,
    NetworkEvent,
    WorkerRun,
)

__all__ = [
    "Settings",
    "CanonicalSignal",
    "Lead",
    "NetworkEvent",
    "Cohort",
    "CohortMember",
    "Campaign",
    "ContactAttempt",
    "WorkerRun",
]
