"""Campaign lifecycle state machine with transition validation."""

from __future__ import annotations

from dormant_leads.core.models import CampaignStatus
from dormant_leads.errors import LeadEngineError


# ---------------------------------------------------------------------------
# Legal transition map
# ---------------------------------------------------------------------------

TRANSITIONS: dict[CampaignStatus, set[CampaignStatus]] = {
    CampaignStatus.DRAFT: {
        CampaignStatus.SCHEDULED,
        CampaignStatus.SENDING,
        CampaignStatus.CANCELLED,
    },
    CampaignStatus.SCHEDULED: {
        CampaignStatus.SENDING,
        CampaignStatus.CANCELLED,
    },
    CampaignStatus.SENDING: {
        CampaignStatus.COMPLETED,
        CampaignStatus.CANCELLED,
    },
    CampaignStatus.COMPLETED: set(),  # terminal
    CampaignStatus.CANCELLED: set(),  # terminal
}

# Terminal states that allow no transitions out
TERMINAL_STATES = {
    CampaignStatus.COMPLETED,
    CampaignStatus.CANCELLED,
}

# States a dispatch may start from
SENDABLE_STATES = {
    CampaignStatus.DRAFT,
    CampaignStatus.SCHEDULED,
}


class TransitionError(LeadEngineError):
    """Raised when an illegal state transition is attempted."""


def can_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def validate_transition(current: CampaignStatus, target: CampaignStatus) -> None:
    """Check if the transition is legal."""
    if not can_transition(current, target):
        allowed = sorted(s.value for s in TRANSITIONS.get(current, set()))
        raise TransitionError(
            f"Illegal transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed}"
        )
