"""Escalation Queue Manager: hand messages over to human employees."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from ..config import Settings
from ..errors import MessageNotFound, QueueClaimConflict, QueueEntryNotFound, StatusConflict
from ..messages.repository import MessageRepository
from ..messages.schemas import Message, MessageStatus
from ..metrics import ESCALATIONS
from .repository import EscalationRepository
from .schemas import ClaimResult, EscalationQueueEntry, EscalationReason
from .strategies import AssignmentStrategy, EmployeeDirectory, RoundRobinStrategy

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = (MessageStatus.COMPLETED, MessageStatus.ESCALATED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscalationManager:
    """Coordinates queue entries with the message status machine.

    ``new -> queued`` on enqueue, ``queued -> in_progress`` on claim,
    ``in_progress -> completed | escalated`` on resolve and
    ``in_progress -> queued`` when a stale claim is released.
    """

    def __init__(
        self,
        messages: MessageRepository,
        entries: EscalationRepository,
        settings: Settings,
        *,
        directory: EmployeeDirectory | None = None,
        strategy: AssignmentStrategy | None = None,
    ) -> None:
        self.messages = messages
        self.entries = entries
        self.settings = settings
        self.directory = directory
        self.strategy = strategy or RoundRobinStrategy()

    # ------------------------------------------------------------------
    # Enqueue

    def enqueue(
        self, workspace_id: str, message_id: UUID, reason: EscalationReason
    ) -> EscalationQueueEntry:
        """Queue ``message_id`` for a human; idempotent while an entry is open."""

        existing = self.entries.get_open_for_message(workspace_id, message_id)
        if existing is not None:
            return existing
        message = self.messages.get(workspace_id, message_id)
        if message is None:
            raise MessageNotFound(f"Message {message_id} not found")
        if message.status not in (MessageStatus.NEW, MessageStatus.QUEUED):
            raise StatusConflict(
                f"Message {message_id} is {message.status.value}; it cannot be queued"
            )

        entry, created = self.entries.create(
            EscalationQueueEntry(
                message_id=message_id,
                workspace_id=workspace_id,
                reason=reason,
                offered_to=self._suggest_employee(workspace_id),
            )
        )
        if message.status is MessageStatus.NEW:
            try:
                self.messages.update_status(
                    workspace_id, message_id, MessageStatus.NEW, MessageStatus.QUEUED
                )
            except StatusConflict:
                current = self.messages.get(workspace_id, message_id)
                if current is None or current.status is not MessageStatus.QUEUED:
                    raise
        if created:
            ESCALATIONS.labels(reason.value).inc()
            logger.info(
                "Message queued for human handling",
                extra={
                    "workspace_id": workspace_id,
                    "message_id": str(message_id),
                    "reason": reason.value,
                    "offered_to": entry.offered_to,
                },
            )
        return entry

    def _suggest_employee(self, workspace_id: str) -> str | None:
        if self.directory is None:
            return None
        employees = self.directory.list_available(workspace_id)
        if not employees:
            return None
        return self.strategy.select(
            workspace_id, employees, self.entries.open_load(workspace_id)
        )

    # ------------------------------------------------------------------
    # Claim / resolve

    def claim(self, workspace_id: str, entry_id: UUID, employee_id: str) -> ClaimResult:
        """Atomically assign the entry; exactly one concurrent caller wins."""

        entry = self.entries.get(workspace_id, entry_id)
        if entry is None:
            raise QueueEntryNotFound(f"Queue entry {entry_id} not found")
        if not entry.is_open:
            return ClaimResult(
                ok=False, entry=entry, error=QueueClaimConflict("Queue entry already closed")
            )

        claimed = self.entries.claim(workspace_id, entry_id, employee_id, _utcnow())
        if claimed is None:
            current = self.entries.get(workspace_id, entry_id)
            return ClaimResult(
                ok=False,
                entry=current,
                error=QueueClaimConflict(
                    f"Queue entry {entry_id} already claimed"
                    + (f" by {current.assigned_employee_id}" if current else "")
                ),
            )
        try:
            self.messages.update_status(
                workspace_id,
                claimed.message_id,
                MessageStatus.QUEUED,
                MessageStatus.IN_PROGRESS,
                assigned_employee_id=employee_id,
            )
        except StatusConflict as exc:
            self.entries.unclaim(workspace_id, entry_id, employee_id)
            return ClaimResult(ok=False, entry=entry, error=QueueClaimConflict(str(exc)))
        logger.info(
            "Queue entry claimed",
            extra={
                "workspace_id": workspace_id,
                "entry_id": str(entry_id),
                "employee_id": employee_id,
            },
        )
        return ClaimResult(ok=True, entry=claimed)

    def resolve(
        self,
        workspace_id: str,
        entry_id: UUID,
        employee_id: str,
        outcome: MessageStatus,
    ) -> Message:
        """Close the entry and move its message to ``completed`` or ``escalated``."""

        if outcome not in RESOLVED_STATUSES:
            raise StatusConflict(f"Cannot resolve a message as {outcome.value}")
        entry = self.entries.get(workspace_id, entry_id)
        if entry is None:
            raise QueueEntryNotFound(f"Queue entry {entry_id} not found")
        if entry.assigned_employee_id != employee_id or not entry.is_open:
            raise QueueClaimConflict(f"Queue entry {entry_id} is not claimed by {employee_id}")
        message = self.messages.update_status(
            workspace_id, entry.message_id, MessageStatus.IN_PROGRESS, outcome
        )
        self.entries.close(workspace_id, entry_id, employee_id, _utcnow())
        return message

    # ------------------------------------------------------------------
    # Maintenance / listing

    def list_open(
        self, workspace_id: str, limit: int = 50, offset: int = 0
    ) -> list[EscalationQueueEntry]:
        return self.entries.list_open(workspace_id, limit=limit, offset=offset)

    def release_stale_claims(
        self, workspace_id: str, *, now: datetime | None = None
    ) -> list[EscalationQueueEntry]:
        """Return long-held claims to the queue."""

        cutoff = (now or _utcnow()) - timedelta(minutes=self.settings.stale_claim_minutes)
        released = self.entries.release_stale(workspace_id, cutoff)
        for entry in released:
            try:
                self.messages.update_status(
                    workspace_id,
                    entry.message_id,
                    MessageStatus.IN_PROGRESS,
                    MessageStatus.QUEUED,
                    assigned_employee_id=None,
                )
            except StatusConflict:
                logger.warning(
                    "Released claim for a message that is no longer in progress",
                    extra={"entry_id": str(entry.id), "message_id": str(entry.message_id)},
                )
        if released:
            logger.info(
                "Released stale queue claims",
                extra={"workspace_id": workspace_id, "released": len(released)},
            )
        return released
