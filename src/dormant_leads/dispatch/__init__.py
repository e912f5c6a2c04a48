"""Campaign dispatch: delivery channels, templates and the throttled dispatcher."""

from dormant_leads.dispatch.campaign import CampaignDispatcher, batch_delay_ms
from dormant_leads.dispatch.senders import MessageSender, MockSender, SmsApiSender, create_sender

__all__ = [
    "CampaignDispatcher",
    "MessageSender",
    "MockSender",
    "SmsApiSender",
    "batch_delay_ms",
    "create_sender",
]
