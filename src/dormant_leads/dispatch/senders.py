"""Message delivery channels."""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from collections import deque
from urllib.parse import quote

import httpx

from dormant_leads.core.config import Settings
from dormant_leads.errors import DeliveryError

logger = logging.getLogger(__name__)


class MessageSender(ABC):
    """Hands one message to a delivery channel. Raises DeliveryError on failure."""

    sender_name: str = "unknown"

    @abstractmethod
    async def send(self, recipient: str, message: str) -> None:
        ...

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass


class MockSender(MessageSender):
    """Simulated delivery that succeeds with probability ``success_rate``."""

    sender_name = "mock"

    def __init__(
        self,
        success_rate: float = 0.9,
        rng: random.Random | None = None,
        history: int = 100,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be within [0, 1]")
        self.success_rate = success_rate
        self.rng = rng or random.Random()
        # Most recent deliveries only
        self.sent: deque[tuple[str, str]] = deque(maxlen=history)

    async def send(self, recipient: str, message: str) -> None:
        logger.info("[MOCK SMS] To: %s... | Message: %s...", recipient[:6], message[:50])
        if self.rng.random() >= self.success_rate:
            raise DeliveryError(f"Simulated delivery failure for {recipient[:6]}...")
        self.sent.append((recipient, message))


class SmsApiSender(MessageSender):
    """Orange SMS messaging API (outbound requests)."""

    sender_name = "sms_api"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_url = settings.sms_api_url.rstrip("/")
        self.api_key = settings.sms_api_key
        self.sender = settings.sms_sender_name
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=30.0,
            )
        return self._client

    async def send(self, recipient: str, message: str) -> None:
        if not self.api_key:
            raise DeliveryError("SMS API key not configured")

        payload = {
            "outboundSMSMessageRequest": {
                "address": [f"tel:{recipient}"],
                "senderAddress": f"tel:{self.sender}",
                "outboundSMSTextMessage": {"message": message},
            },
        }
        try:
            resp = await self.client.post(
                f"/outbound/{quote(self.sender, safe='')}/requests", json=payload
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(f"SMS API error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise DeliveryError(f"SMS API connection error: {e}") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def create_sender(settings: Settings | None = None) -> MessageSender:
    """Pick the delivery channel once, at composition time."""
    s = settings or Settings()
    if s.dispatch_mode == "live":
        return SmsApiSender(s)
    if s.dispatch_mode != "mock":
        logger.warning("Unknown DISPATCH_MODE %r, falling back to mock", s.dispatch_mode)
    return MockSender(s.mock_success_rate)
