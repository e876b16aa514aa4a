"""Domain exceptions raised across the ingestion and automation pipeline."""

from __future__ import annotations


class InboxAutomationError(RuntimeError):
    """Base class for every error raised by the automation core."""


class SignatureInvalid(InboxAutomationError):
    """Webhook authenticity check or subscription handshake failed."""


class PayloadMalformed(InboxAutomationError):
    """Webhook body could not be decoded into canonical events."""


class WorkspaceUnresolved(InboxAutomationError):
    """No workspace owns the channel account that produced an event."""

    def __init__(self, channel: str, account_id: str | None) -> None:
        super().__init__(f"No workspace mapped for {channel} account {account_id!r}")
        self.channel = channel
        self.account_id = account_id


class RuleConfigInvalid(InboxAutomationError):
    """An automation rule cannot be evaluated or executed as configured."""


class ActionDispatchFailed(InboxAutomationError):
    """An outbound action failed after exhausting its retries."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class AIResponderTimeout(InboxAutomationError):
    """The AI responder did not produce a usable answer in time."""


class QueueClaimConflict(InboxAutomationError):
    """Another employee already claimed the queue entry."""


class StatusConflict(InboxAutomationError):
    """A guarded status transition found the message in another state."""


class MessageNotFound(InboxAutomationError):
    pass


class QueueEntryNotFound(InboxAutomationError):
    pass


__all__ = [
    "AIResponderTimeout",
    "ActionDispatchFailed",
    "InboxAutomationError",
    "MessageNotFound",
    "PayloadMalformed",
    "QueueClaimConflict",
    "QueueEntryNotFound",
    "RuleConfigInvalid",
    "SignatureInvalid",
    "StatusConflict",
    "WorkspaceUnresolved",
]
