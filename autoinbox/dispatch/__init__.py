"""Action dispatch: outbound replies, AI personalisation and delayed actions."""

from .dispatcher import ActionDispatcher, ActionResult, backoff_delays
from .responder import (
    AIContext,
    AIResponder,
    AIResponse,
    BoundedResponder,
    OpenAIResponder,
    has_placeholders,
)
from .scheduler import DelayedActionScheduler
from .senders import (
    AutomationWebhookClient,
    MetaGraphSender,
    OutboundRequest,
    OutboundSender,
    SendResult,
    WhatsAppCloudSender,
)

__all__ = [
    "AIContext",
    "AIResponder",
    "AIResponse",
    "ActionDispatcher",
    "ActionResult",
    "AutomationWebhookClient",
    "BoundedResponder",
    "DelayedActionScheduler",
    "MetaGraphSender",
    "OpenAIResponder",
    "OutboundRequest",
    "OutboundSender",
    "SendResult",
    "WhatsAppCloudSender",
    "backoff_delays",
    "has_placeholders",
]
