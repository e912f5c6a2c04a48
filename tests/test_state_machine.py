"""Tests for the campaign lifecycle state machine - transitions and terminal states."""

from __future__ import annotations

import pytest

from dormant_leads.core.models import CampaignStatus
from dormant_leads.state_machine import (
    SENDABLE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    TransitionError,
    can_transition,
    validate_transition,
)


class TestTransitionRules:
    """Test the state transition map is correct."""

    def test_draft_can_be_scheduled(self):
        assert CampaignStatus.SCHEDULED in TRANSITIONS[CampaignStatus.DRAFT]

    def test_draft_can_be_sent_directly(self):
        assert CampaignStatus.SENDING in TRANSITIONS[CampaignStatus.DRAFT]

    def test_draft_can_be_cancelled(self):
        assert CampaignStatus.CANCELLED in TRANSITIONS[CampaignStatus.DRAFT]

    def test_scheduled_to_sending(self):
        assert CampaignStatus.SENDING in TRANSITIONS[CampaignStatus.SCHEDULED]

    def test_scheduled_cannot_go_back_to_draft(self):
        assert CampaignStatus.DRAFT not in TRANSITIONS[CampaignStatus.SCHEDULED]

    def test_sending_to_completed(self):
        assert CampaignStatus.COMPLETED in TRANSITIONS[CampaignStatus.SENDING]

    def test_sending_can_be_cancelled(self):
        assert CampaignStatus.CANCELLED in TRANSITIONS[CampaignStatus.SENDING]

    def test_draft_cannot_complete(self):
        assert not can_transition(CampaignStatus.DRAFT, CampaignStatus.COMPLETED)

    def test_every_status_has_an_entry(self):
        for status in CampaignStatus:
            assert status in TRANSITIONS


class TestTerminalStates:
    """Test that terminal states have no outbound transitions."""

    def test_completed_is_terminal(self):
        assert CampaignStatus.COMPLETED in TERMINAL_STATES
        assert len(TRANSITIONS[CampaignStatus.COMPLETED]) == 0

    def test_cancelled_is_terminal(self):
        assert CampaignStatus.CANCELLED in TERMINAL_STATES
        assert len(TRANSITIONS[CampaignStatus.CANCELLED]) == 0

    def test_terminal_states_are_not_sendable(self):
        assert not TERMINAL_STATES & SENDABLE_STATES

    def test_sendable_states(self):
        assert SENDABLE_STATES == {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED}


class TestValidateTransition:

    def test_legal_transition_passes(self):
        validate_transition(CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)

    def test_illegal_transition_raises(self):
        with pytest.raises(TransitionError, match="completed -> draft"):
            validate_transition(CampaignStatus.COMPLETED, CampaignStatus.DRAFT)

    def test_error_lists_allowed_targets(self):
        with pytest.raises(TransitionError, match=r"\['cancelled', 'sending'\]"):
            validate_transition(CampaignStatus.SCHEDULED, CampaignStatus.COMPLETED)
