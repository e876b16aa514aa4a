"""Pydantic models and enums for canonical inbox messages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Channel(str, Enum):
    """Inbound channels with a webhook adapter."""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    WHATSAPP = "whatsapp"
    WEBSITE_FORM = "website_form"


class MessageType(str, Enum):
    COMMENT = "comment"
    DM = "dm"
    FORM = "form"


class MessageStatus(str, Enum):
    """Lifecycle of a message from ingestion to human resolution."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    QUEUED = "queued"
    ESCALATED = "escalated"
    COMPLETED = "completed"


class ApplicationOutcome(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """Canonical, workspace-scoped representation of one inbound interaction."""

    id: UUID = Field(default_factory=uuid4)
    workspace_id: str
    agent_id: str | None = None
    channel: Channel
    external_id: str
    conversation_id: str
    sender_id: str
    sender_name: str | None = None
    text: str = ""
    post_id: str | None = None
    type: MessageType
    status: MessageStatus = MessageStatus.NEW
    ai_response: str | None = None
    ai_confidence: float | None = None
    assigned_employee_id: str | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("ai_confidence")
    @classmethod
    def _round_confidence(cls, value: float | None) -> float | None:
        if value is None:
            return None
        if not 0.0 <= value <= 1.0:
            raise ValueError("ai_confidence must be between 0.0 and 1.0")
        return round(value, 2)


class RuleApplicationKey(BaseModel):
    """Idempotency key guarding one action of one rule on one message."""

    message_id: UUID
    rule_id: str
    action_type: str


class RuleApplication(RuleApplicationKey):
    workspace_id: str
    conversation_id: str
    outcome: ApplicationOutcome = ApplicationOutcome.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


class MessageFilters(BaseModel):
    status: MessageStatus | None = None
    channel: Channel | None = None
    assigned_employee_id: str | None = None


class Pagination(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class MessageList(BaseModel):
    items: list[Message]
    limit: int
    offset: int
