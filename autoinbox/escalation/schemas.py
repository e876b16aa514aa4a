"""Pydantic models for the human escalation queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..errors import QueueClaimConflict


class EscalationReason(str, Enum):
    NO_MATCH = "no_match"
    LOW_CONFIDENCE = "low_confidence"
    DISPATCH_FAILED = "dispatch_failed"
    MANUAL = "manual"


class EscalationQueueEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    message_id: UUID
    workspace_id: str
    reason: EscalationReason
    assigned_employee_id: str | None = None
    claimed_at: datetime | None = None
    offered_to: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None


@dataclass(frozen=True)
class ClaimResult:
    ok: bool
    entry: EscalationQueueEntry | None = None
    error: QueueClaimConflict | None = None


class ResolveRequest(BaseModel):
    outcome: Literal["completed", "escalated"]


class QueueList(BaseModel):
    items: list[EscalationQueueEntry]
    limit: int
    offset: int
