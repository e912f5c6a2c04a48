"""Abstract base class for network signal sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, Field


class ReachabilityStatus(BaseModel):
    """Device reachability as reported by the operator network."""

    reachable: bool
    connectivity: list[str] = Field(default_factory=list)
    last_status_time: datetime | None = None


class SimSwapStatus(BaseModel):
    """Latest SIM change known for a line, if any."""

    swapped_at: datetime | None = None
    monitored_period: int | None = None


class SignalSource(ABC):
    """Capability interface over the operator signal APIs.

    Implementations are chosen once at composition time (see
    ``create_signal_source``) and injected into the services that need them.
    """

    source_name: str = "unknown"

    @abstractmethod
    async def get_reachability_status(self, line_id: str) -> ReachabilityStatus:
        """Return whether the device behind ``line_id`` is reachable."""
        ...

    @abstractmethod
    async def get_sim_swap_status(self, line_id: str) -> SimSwapStatus:
        """Return the latest SIM swap date for ``line_id``."""
        ...

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass
