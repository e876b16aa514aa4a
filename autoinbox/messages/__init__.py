"""Canonical messages and the workspace-scoped Message Store."""

from .models import InboundEvent
from .repository import (
    InMemoryMessageRepository,
    MessageRepository,
    PostgresMessageRepository,
)
from .schemas import (
    ApplicationOutcome,
    Channel,
    Message,
    MessageFilters,
    MessageStatus,
    MessageType,
    Pagination,
    RuleApplication,
    RuleApplicationKey,
)

__all__ = [
    "ApplicationOutcome",
    "Channel",
    "InMemoryMessageRepository",
    "InboundEvent",
    "Message",
    "MessageFilters",
    "MessageRepository",
    "MessageStatus",
    "MessageType",
    "Pagination",
    "PostgresMessageRepository",
    "RuleApplication",
    "RuleApplicationKey",
]
