"""Exceptions raised by the lead engine."""

from __future__ import annotations


class LeadEngineError(Exception):
    """Base class for lead engine errors."""


class ValidationError(LeadEngineError):
    """Rejected input: missing line identifier or out-of-range parameter."""


class NotFoundError(LeadEngineError):
    """A campaign, cohort or lead does not exist."""


class SignalSourceError(LeadEngineError):
    """A network signal adapter failed to answer."""


class RefreshInProgressError(LeadEngineError):
    """A daily refresh was requested while another one is running."""


class DeliveryError(LeadEngineError):
    """A message could not be handed to the delivery channel."""
