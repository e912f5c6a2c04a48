"""Dormancy scoring and exclusion rules.

Everything in this module is pure: no I/O, the clock is passed in.

    dormant_score =
        0.40 x swap_signal +
        0.35 x unreachability_signal +
        0.15 x time_window_signal +
        0.10 x history_signal
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from pydantic import BaseModel

from dormant_leads.core.config import Settings
from dormant_leads.core.models import (
    CanonicalSignal,
    Evaluation,
    EventType,
    ExclusionReason,
    HistorySignal,
    LeadSignals,
    LineType,
    NetworkEvent,
    NextAction,
    ReachabilitySignal,
    SwapSignal,
)
from dormant_leads.errors import ValidationError
from dormant_leads.signals.base import ReachabilityStatus, SimSwapStatus


SWAP_WEIGHT = 0.40
UNREACHABLE_WEIGHT = 0.35
WINDOW_WEIGHT = 0.15
HISTORY_WEIGHT = 0.10

# Days of unreachability that saturate the unreachability signal
UNREACHABLE_SATURATION_DAYS = 7
# Swap count at which the history signal reaches zero
HISTORY_SATURATION_SWAPS = 3

SECONDS_PER_DAY = 86400


class ScoringRules(BaseModel):
    """Rule thresholds, in days unless stated otherwise."""

    min_days_after_swap: int = 3
    max_activation_window_days: int = 14
    max_swaps_30d_threshold: int = 2
    min_days_between_contacts: int = 14
    decay_days: int = 90

    @classmethod
    def from_settings(cls, settings: Settings) -> ScoringRules:
        return cls(
            min_days_after_swap=settings.min_days_after_swap,
            max_activation_window_days=settings.max_activation_window_days,
            max_swaps_30d_threshold=settings.max_swaps_30d_threshold,
            min_days_between_contacts=settings.min_days_between_contacts,
            decay_days=settings.detection_decay_days,
        )


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def days_between(later: datetime, earlier: datetime) -> float:
    return (_aware(later) - _aware(earlier)).total_seconds() / SECONDS_PER_DAY


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Single-signal evaluation
# ---------------------------------------------------------------------------


def calculate_signals(signal: CanonicalSignal, now: datetime) -> LeadSignals:
    """Derive the stored signal record from a canonical input."""
    days_since_swap = days_between(now, signal.sim_swap.ts)

    reach = signal.old_device_reachability
    days_unreachable = 0.0
    if not reach.reachable and reach.last_activity_ts:
        days_unreachable = days_between(now, reach.last_activity_ts)
    elif not reach.reachable:
        # No last activity known: assume unreachable since the swap
        days_unreachable = days_since_swap

    swap_count_30d = signal.metadata.swap_count_30d or 1

    return LeadSignals(
        swap=SwapSignal(
            days_since_swap=days_since_swap,
            swap_count_30d=swap_count_30d,
            swapped_at=signal.sim_swap.ts if signal.sim_swap.occurred else None,
        ),
        reachability=ReachabilitySignal(
            days_unreachable=max(0.0, days_unreachable),
            reachable=reach.reachable,
            checked_at=reach.checked_ts,
        ),
    )


def check_exclusions(
    signal: CanonicalSignal,
    signals: LeadSignals,
    rules: ScoringRules,
    now: datetime,
) -> list[ExclusionReason]:
    """Evaluate every exclusion rule; all of them, in a fixed order."""
    exclusions: list[ExclusionReason] = []

    if not signal.sim_swap.occurred:
        exclusions.append(ExclusionReason.NO_SWAP_DETECTED)

    if signals.days_since_swap < rules.min_days_after_swap:
        exclusions.append(ExclusionReason.TOO_SOON_AFTER_SWAP)

    if signal.line_type == LineType.BUSINESS:
        exclusions.append(ExclusionReason.BUSINESS_LINE)

    if signal.line_type == LineType.M2M:
        exclusions.append(ExclusionReason.M2M_LINE)

    if signal.fraud_flag:
        exclusions.append(ExclusionReason.FRAUD_FLAG)

    if signal.metadata.opt_out:
        exclusions.append(ExclusionReason.OPT_OUT)

    last_contact = signal.metadata.last_contact_ts
    if last_contact is not None:
        if days_between(now, last_contact) < rules.min_days_between_contacts:
            exclusions.append(ExclusionReason.RECENTLY_CONTACTED)

    if signals.swap_count_30d > rules.max_swaps_30d_threshold:
        exclusions.append(ExclusionReason.MULTIPLE_SWAPS_DETECTED)

    if signal.old_device_reachability.reachable:
        exclusions.append(ExclusionReason.DEVICE_STILL_REACHABLE)

    return exclusions


def window_signal(days_since_swap: float, rules: ScoringRules) -> float:
    """1.0 inside the activation window, linear decay around its midpoint outside."""
    low = rules.min_days_after_swap
    high = rules.max_activation_window_days
    if low <= days_since_swap <= high:
        return 1.0
    midpoint = (low + high) / 2
    span = high - low
    if span <= 0:
        return 0.0
    return max(0.0, 1 - abs(days_since_swap - midpoint) / span)


def history_signal(swap_count_30d: int) -> float:
    return max(0.0, 1 - swap_count_30d / HISTORY_SATURATION_SWAPS)


def unreachability_signal(days_unreachable: float) -> float:
    return min(days_unreachable / UNREACHABLE_SATURATION_DAYS, 1.0)


def calculate_score(
    signal: CanonicalSignal,
    signals: LeadSignals,
    exclusions: list[ExclusionReason],
    rules: ScoringRules,
) -> float:
    if exclusions:
        return 0.0

    swap = 1.0 if signal.sim_swap.occurred else 0.0
    score = (
        SWAP_WEIGHT * _clamp(swap)
        + UNREACHABLE_WEIGHT * _clamp(unreachability_signal(signals.days_unreachable))
        + WINDOW_WEIGHT * _clamp(window_signal(signals.days_since_swap, rules))
        + HISTORY_WEIGHT * _clamp(history_signal(signals.swap_count_30d))
    )
    return _clamp(score)


def determine_next_action(
    signals: LeadSignals,
    exclusions: list[ExclusionReason],
    rules: ScoringRules,
) -> NextAction:
    # Too soon after swap is a temporary hold, every other exclusion is final
    if exclusions:
        if exclusions == [ExclusionReason.TOO_SOON_AFTER_SWAP]:
            return NextAction.HOLD
        return NextAction.EXCLUDE

    if signals.days_since_swap < rules.min_days_after_swap:
        return NextAction.HOLD

    if signals.days_since_swap > rules.max_activation_window_days:
        return NextAction.EXPIRED

    return NextAction.SEND_NUDGE


def activation_window(days_since_swap: float, rules: ScoringRules) -> int:
    """Remaining days in the activation window, never below 1."""
    return max(1, math.ceil(rules.max_activation_window_days - days_since_swap))


def evaluate(
    signal: CanonicalSignal,
    rules: ScoringRules | None = None,
    now: datetime | None = None,
) -> Evaluation:
    """Score one canonical signal and decide what to do with the line."""
    if not signal.msisdn_hash or not signal.msisdn_hash.strip():
        raise ValidationError("msisdn_hash is required")

    r = rules or ScoringRules()
    current = now or datetime.now(timezone.utc)

    signals = calculate_signals(signal, current)
    exclusions = check_exclusions(signal, signals, r, current)
    score = calculate_score(signal, signals, exclusions, r)

    return Evaluation(
        dormant_score=score,
        eligible=not exclusions and signals.days_since_swap >= r.min_days_after_swap,
        activation_window_days=activation_window(signals.days_since_swap, r),
        next_action=determine_next_action(signals, exclusions, r),
        exclusions=exclusions,
        signals=signals,
    )


# ---------------------------------------------------------------------------
# Aggregate scoring over raw network events
# ---------------------------------------------------------------------------


def event_weight(event: NetworkEvent, now: datetime, decay_days: int) -> float:
    """Linear time decay: a fresh event weighs 1.0, one ``decay_days`` old 0.0."""
    if event.created_at is None or decay_days <= 0:
        return 1.0
    age = days_between(now, event.created_at)
    return _clamp(1 - age / decay_days)


def _latest(events: list[NetworkEvent]) -> NetworkEvent | None:
    dated = [e for e in events if e.created_at is not None]
    if not dated:
        return events[-1] if events else None
    return max(dated, key=lambda e: _aware(e.created_at))


def score_events(
    events: list[NetworkEvent],
    rules: ScoringRules | None = None,
    now: datetime | None = None,
) -> tuple[float, LeadSignals]:
    """Score the aggregate of one line's raw events with time-decay weighting.

    The swap and unreachability contributions are weighted by the age of the
    most recent observation of their kind. Window and history terms follow
    the single-signal formula.
    """
    r = rules or ScoringRules()
    current = now or datetime.now(timezone.utc)

    swap_events = [e for e in events if e.event_type == EventType.SIM_SWAP]
    reach_events = [e for e in events if e.event_type == EventType.REACHABILITY_CHECK]

    swapped_at: datetime | None = None
    swap_weight = 0.0
    swap_dates: set[datetime] = set()
    for e in swap_events:
        status = SimSwapStatus.model_validate(e.payload)
        if status.swapped_at is not None:
            when = _aware(status.swapped_at)
            if days_between(current, when) <= 30:
                swap_dates.add(when)
    latest_swap = _latest(swap_events)
    if latest_swap is not None:
        status = SimSwapStatus.model_validate(latest_swap.payload)
        swapped_at = status.swapped_at
        swap_weight = event_weight(latest_swap, current, r.decay_days)

    days_since_swap = days_between(current, swapped_at) if swapped_at else 0.0

    reachable = False
    days_unreachable = 0.0
    reach_weight = 0.0
    checked_at: datetime | None = None
    latest_reach = _latest(reach_events)
    if latest_reach is not None:
        status = ReachabilityStatus.model_validate(latest_reach.payload)
        reachable = status.reachable
        checked_at = latest_reach.created_at
        reach_weight = event_weight(latest_reach, current, r.decay_days)
        if not reachable and status.last_status_time is not None:
            days_unreachable = max(0.0, days_between(current, status.last_status_time))
        elif not reachable:
            days_unreachable = days_since_swap

    swap_count = len(swap_dates)
    score = HISTORY_WEIGHT * _clamp(history_signal(swap_count))
    if swapped_at is not None:
        score += SWAP_WEIGHT * swap_weight
        score += WINDOW_WEIGHT * _clamp(window_signal(days_since_swap, r))
    if latest_reach is not None and not reachable:
        score += UNREACHABLE_WEIGHT * reach_weight * _clamp(unreachability_signal(days_unreachable))

    last = _latest(events)
    signals = LeadSignals(
        swap=SwapSignal(
            days_since_swap=days_since_swap,
            swap_count_30d=swap_count,
            swapped_at=swapped_at,
        ),
        reachability=ReachabilitySignal(
            days_unreachable=days_unreachable,
            reachable=reachable,
            checked_at=checked_at,
        ),
        history=HistorySignal(
            event_count=len(events),
            sim_swap_events=len(swap_events),
            reachability_events=len(reach_events),
            last_event_at=last.created_at if last else None,
        ),
    )
    return _clamp(score), signals
