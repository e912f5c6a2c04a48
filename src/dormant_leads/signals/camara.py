"""CAMARA network API adapter (device reachability, SIM swap)."""

from __future__ import annotations

import logging
import uuid

import httpx
import pydantic

from dormant_leads.core.config import Settings
from dormant_leads.errors import SignalSourceError
from dormant_leads.signals.base import ReachabilityStatus, SignalSource, SimSwapStatus
from dormant_leads.signals.stub import StubSignalSource

logger = logging.getLogger(__name__)

REACHABILITY_PATH = "/device-reachability-status/v1/retrieve"
SIM_SWAP_PATH = "/sim-swap/v1/retrieve-date"


class CamaraSignalSource(SignalSource):
    """Live adapter over the operator's CAMARA endpoints.

    Token acquisition happens elsewhere; the bearer token comes from settings.
    """

    source_name = "camara"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_url = settings.camara_base_url.rstrip("/")
        self.access_token = settings.camara_access_token
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.settings.camara_timeout,
            )
        return self._client

    async def _post(self, path: str, payload: dict) -> dict:
        if not self.access_token:
            raise SignalSourceError("CAMARA access token not configured")
        try:
            resp = await self.client.post(
                path, json=payload, headers={"x-correlator": str(uuid.uuid4())}
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise SignalSourceError(
                f"CAMARA API error on {path}: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise SignalSourceError(f"CAMARA connection error on {path}: {e}") from e
        except ValueError as e:
            raise SignalSourceError(f"CAMARA returned a non-JSON body on {path}") from e
        if not isinstance(data, dict):
            raise SignalSourceError(f"CAMARA returned an unexpected body on {path}")
        return data

    async def get_reachability_status(self, line_id: str) -> ReachabilityStatus:
        data = await self._post(REACHABILITY_PATH, {"device": {"phoneNumber": line_id}})
        try:
            return ReachabilityStatus(
                reachable=bool(data.get("reachable", False)),
                connectivity=data.get("connectivity") or [],
                last_status_time=data.get("lastStatusTime"),
            )
        except pydantic.ValidationError as e:
            raise SignalSourceError(f"Malformed CAMARA reachability response: {e}") from e

    async def get_sim_swap_status(self, line_id: str) -> SimSwapStatus:
        data = await self._post(SIM_SWAP_PATH, {"phoneNumber": line_id})
        try:
            return SimSwapStatus(
                swapped_at=data.get("latestSimChange"),
                monitored_period=data.get("monitoredPeriod"),
            )
        except pydantic.ValidationError as e:
            raise SignalSourceError(f"Malformed CAMARA sim swap response: {e}") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def create_signal_source(settings: Settings | None = None) -> SignalSource:
    """Pick the signal source once, at composition time."""
    s = settings or Settings()
    if s.signal_mode == "live":
        logger.info("Using CAMARA signal source at %s", s.camara_base_url)
        return CamaraSignalSource(s)
    if s.signal_mode != "stub":
        logger.warning("Unknown SIGNAL_MODE %r, falling back to stub", s.signal_mode)
    return StubSignalSource()
