"""Deterministic signal source for local development and tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from dormant_leads.signals.base import ReachabilityStatus, SignalSource, SimSwapStatus

STUB_SWAP_AGE_DAYS = 5
STUB_MONITORED_PERIOD = 120


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StubSignalSource(SignalSource):
    """Answers from fixtures, falling back to keyword rules on the line id.

    Keyword rules: a line id containing ``up`` or ``data`` is reachable over
    DATA, ``sms`` is reachable over SMS, anything else is unreachable. A line
    id containing ``swapped`` reports a SIM change a few days ago.
    """

    source_name = "stub"

    def __init__(
        self,
        reachability: dict[str, ReachabilityStatus] | None = None,
        sim_swaps: dict[str, SimSwapStatus] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.reachability = dict(reachability or {})
        self.sim_swaps = dict(sim_swaps or {})
        self.clock = clock

    async def get_reachability_status(self, line_id: str) -> ReachabilityStatus:
        if line_id in self.reachability:
            return self.reachability[line_id]

        now = self.clock()
        if "up" in line_id or "data" in line_id:
            return ReachabilityStatus(reachable=True, connectivity=["DATA"], last_status_time=now)
        if "sms" in line_id:
            return ReachabilityStatus(reachable=True, connectivity=["SMS"], last_status_time=now)
        return ReachabilityStatus(reachable=False, last_status_time=None)

    async def get_sim_swap_status(self, line_id: str) -> SimSwapStatus:
        if line_id in self.sim_swaps:
            return self.sim_swaps[line_id]

        if "swapped" in line_id:
            return SimSwapStatus(
                swapped_at=self.clock() - timedelta(days=STUB_SWAP_AGE_DAYS),
                monitored_period=STUB_MONITORED_PERIOD,
            )
        return SimSwapStatus()
