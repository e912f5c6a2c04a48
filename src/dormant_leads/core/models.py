"""Pydantic models for the dormant lead engine."""

from __future__ import annotations

import enum
from datetime import date, datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LineType(str, enum.Enum):
    CONSUMER = "consumer"
    BUSINESS = "business"
    M2M = "m2m"


class NextAction(str, enum.Enum):
    SEND_NUDGE = "send_nudge"
    HOLD = "hold"
    EXCLUDE = "exclude"
    EXPIRED = "expired"


class ExclusionReason(str, enum.Enum):
    NO_SWAP_DETECTED = "no_swap_detected"
    TOO_SOON_AFTER_SWAP = "too_soon_after_swap"
    BUSINESS_LINE = "business_line"
    M2M_LINE = "m2m_line"
    FRAUD_FLAG = "fraud_flag"
    OPT_OUT = "opt_out"
    RECENTLY_CONTACTED = "recently_contacted"
    MULTIPLE_SWAPS_DETECTED = "multiple_swaps_detected"
    DEVICE_STILL_REACHABLE = "device_still_reachable"


class EventType(str, enum.Enum):
    SIM_SWAP = "sim_swap"
    REACHABILITY_CHECK = "reachability_check"


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Channel(str, enum.Enum):
    SMS = "sms"
    EMAIL = "email"
    RCS = "rcs"
    PUSH = "push"


class AttemptStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CLICKED = "clicked"


class WorkerRunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CohortName(str, enum.Enum):
    HIGH_VALUE = "high_value"
    MEDIUM_VALUE = "medium_value"
    LOW_VALUE = "low_value"
    AT_RISK = "at_risk"
    DORMANT = "dormant"
    CHURNED = "churned"


# ---------------------------------------------------------------------------
# Canonical input (never persisted verbatim)
# ---------------------------------------------------------------------------

class SimSwapObservation(BaseModel):
    occurred: bool
    ts: datetime


class ReachabilityObservation(BaseModel):
    reachable: bool
    checked_ts: datetime
    last_activity_ts: datetime | None = None


class SignalMetadata(BaseModel):
    swap_count_30d: int | None = None
    opt_out: bool = False
    last_contact_ts: datetime | None = None


class CanonicalSignal(BaseModel):
    """Normalized per-line network facts consumed by the scoring engine."""

    msisdn_hash: str
    sim_swap: SimSwapObservation
    old_device_reachability: ReachabilityObservation
    line_type: LineType = LineType.CONSUMER
    fraud_flag: bool = False
    metadata: SignalMetadata = Field(default_factory=SignalMetadata)


# ---------------------------------------------------------------------------
# Derived signals stored on a lead
# ---------------------------------------------------------------------------

class SwapSignal(BaseModel):
    days_since_swap: float = 0.0
    swap_count_30d: int = 0
    swapped_at: datetime | None = None


class ReachabilitySignal(BaseModel):
    days_unreachable: float = 0.0
    reachable: bool = False
    checked_at: datetime | None = None


class HistorySignal(BaseModel):
    """Audit trail of the raw events a batch detection pass aggregated."""

    event_count: int = 0
    sim_swap_events: int = 0
    reachability_events: int = 0
    last_event_at: datetime | None = None


class LeadSignals(BaseModel):
    swap: SwapSignal = Field(default_factory=SwapSignal)
    reachability: ReachabilitySignal = Field(default_factory=ReachabilitySignal)
    history: HistorySignal | None = None

    @property
    def days_since_swap(self) -> float:
        return self.swap.days_since_swap

    @property
    def days_unreachable(self) -> float:
        return self.reachability.days_unreachable

    @property
    def swap_count_30d(self) -> int:
        return self.swap.swap_count_30d


class Evaluation(BaseModel):
    """Output of the scoring engine for one canonical signal."""

    dormant_score: float
    eligible: bool
    activation_window_days: int
    next_action: NextAction
    exclusions: list[ExclusionReason] = Field(default_factory=list)
    signals: LeadSignals = Field(default_factory=LeadSignals)


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------

class ContactAttempt(BaseModel):
    id: str | None = None
    lead_id: str
    campaign_id: str | None = None
    channel: Channel = Channel.SMS
    template_variant: str | None = None
    status: AttemptStatus = AttemptStatus.SENT
    tracking_token: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    clicked_at: datetime | None = None
    created_at: datetime | None = None


class Lead(BaseModel):
    id: str | None = None
    msisdn_hash: str
    lead_day: date | None = None
    dormant_score: float = 0.0
    eligible: bool = False
    activation_window_days: int = 1
    next_action: NextAction = NextAction.HOLD
    exclusions: list[ExclusionReason] = Field(default_factory=list)
    signals: LeadSignals = Field(default_factory=LeadSignals)
    contact_count: int = 0
    last_contact_at: datetime | None = None
    estimated_value: float | None = None
    device_tier: int | None = None
    converted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    contact_attempts: list[ContactAttempt] = Field(default_factory=list)


class TrackedLead(BaseModel):
    """A lead resolved from the tracking token of one of its nudges."""

    lead: Lead
    attempt: ContactAttempt


class LeadOutput(BaseModel):
    """Single-line evaluation result handed back to callers."""

    lead_id: str
    msisdn_hash: str
    dormant_score: float
    eligible: bool
    activation_window_days: int
    next_action: NextAction
    exclusions: list[ExclusionReason]
    signals: LeadSignals
    created_at: datetime | None = None
    expires_at: datetime | None = None


class NetworkEvent(BaseModel):
    id: str | None = None
    msisdn_hash: str
    event_type: EventType
    payload: dict = Field(default_factory=dict)
    processed: bool = False
    created_at: datetime | None = None


class Cohort(BaseModel):
    id: str | None = None
    name: CohortName
    description: str | None = None
    recency_min: float | None = None
    recency_max: float | None = None
    frequency_min: int | None = None
    monetary_min: float | None = None
    monetary_max: float | None = None
    dormant_score_min: float | None = None
    is_active: bool = True
    member_count: int = 0
    avg_dormant_score: float | None = None
    avg_estimated_value: float | None = None
    last_refresh_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CohortMember(BaseModel):
    id: str | None = None
    cohort_id: str
    lead_id: str
    msisdn_hash: str
    recency: float
    frequency: int
    monetary: float
    dormant_score: float
    assigned_at: datetime | None = None
    removed_at: datetime | None = None


class TargetFilters(BaseModel):
    """Lead selection predicates shared by dashboards and campaigns."""

    status: str | None = None  # eligible, contacted, converted, expired
    tier: int | None = None
    last_active_before: datetime | None = None
    last_active_after: datetime | None = None
    min_score: float | None = None
    limit: int = 100
    offset: int = 0


class Campaign(BaseModel):
    id: str | None = None
    name: str
    description: str | None = None
    target_filters: TargetFilters = Field(default_factory=TargetFilters)
    estimated_reach: int | None = None
    template_id: str = "default"
    template_variant: str | None = None
    channel: Channel = Channel.SMS
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    completed_at: datetime | None = None
    max_per_hour: int = 100
    batch_size: int = 10
    status: CampaignStatus = CampaignStatus.DRAFT
    total_sent: int = 0
    total_delivered: int = 0
    total_clicked: int = 0
    total_converted: int = 0
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WorkerRun(BaseModel):
    id: str | None = None
    worker_type: str = "daily_refresh"
    status: WorkerRunStatus = WorkerRunStatus.RUNNING
    trigger: str = "cron"
    triggered_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: str | None = None
    error_stack: str | None = None


# ---------------------------------------------------------------------------
# Operation results (not persisted directly)
# ---------------------------------------------------------------------------

class LeadPage(BaseModel):
    leads: list[Lead]
    total: int
    limit: int
    offset: int
    filters: TargetFilters


class StatusCounts(BaseModel):
    eligible: int = 0
    contacted: int = 0
    responded: int = 0
    converted: int = 0
    expired: int = 0


class ValueDistribution(BaseModel):
    total_potential_value: int = 0
    average_value: int = 0
    median_value: int = 0


class ConversionFunnel(BaseModel):
    eligible: int = 0
    contacted: int = 0
    responded: int = 0
    converted: int = 0
    conversion_rate: float = 0.0


class LeadStats(BaseModel):
    """Dashboard view of the lead pool."""

    total_leads: int = 0
    by_status: StatusCounts = Field(default_factory=StatusCounts)
    by_tier: dict[str, int] = Field(default_factory=dict)
    value_distribution: ValueDistribution = Field(default_factory=ValueDistribution)
    conversion_funnel: ConversionFunnel = Field(default_factory=ConversionFunnel)


class CohortMemberPage(BaseModel):
    members: list[CohortMember]
    total: int
    page: int
    pages: int


class DormantStats(BaseModel):
    total_leads: int = 0
    eligible_leads: int = 0
    avg_dormant_score: float = 0.0
    pending_nudges: int = 0


class DetectionResult(BaseModel):
    events_processed: int = 0
    leads_created: int = 0
    leads_updated: int = 0
    errors: int = 0


class CohortRebuildResult(BaseModel):
    cohorts_created: int = 0
    members_assigned: int = 0
    duration_ms: int = 0


class RefreshResult(BaseModel):
    worker_run_id: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    duration_ms: int = 0


class ReapResult(BaseModel):
    leads_purged: int = 0
    events_purged: int = 0


class DispatchResult(BaseModel):
    campaign_id: str
    total_sent: int = 0
    total_delivered: int = 0
    message: str | None = None


class CampaignCreateRequest(BaseModel):
    """Input for creating a campaign."""

    name: str
    description: str | None = None
    target_filters: TargetFilters = Field(default_factory=TargetFilters)
    template_id: str = "default"
    template_variant: str | None = None
    channel: Channel = Channel.SMS
    scheduled_at: datetime | None = None
    max_per_hour: int | None = None
    batch_size: int | None = None
    created_by: str | None = None


class CampaignUpdateRequest(BaseModel):
    """Partial update of a campaign; unset fields are left alone."""

    name: str | None = None
    description: str | None = None
    status: CampaignStatus | None = None
    scheduled_at: datetime | None = None


class CampaignPage(BaseModel):
    campaigns: list[Campaign]
    total: int
    limit: int
    offset: int


class CampaignStats(BaseModel):
    total_sent: int = 0
    total_delivered: int = 0
    total_clicked: int = 0
    total_converted: int = 0
    total_attempts: int = 0
    delivered_rate: float = 0.0
    click_rate: float = 0.0
    conversion_rate: float = 0.0
