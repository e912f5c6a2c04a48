"""Network signal sources (SIM swap, device reachability) and normalization."""

from dormant_leads.signals.base import ReachabilityStatus, SignalSource, SimSwapStatus

__all__ = ["ReachabilityStatus", "SignalSource", "SimSwapStatus"]
