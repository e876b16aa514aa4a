"""Employee-facing routes: the escalation queue and message inbox."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request

from ..core.db import require_workspace_id
from ..errors import (
    MessageNotFound,
    QueueClaimConflict,
    QueueEntryNotFound,
    StatusConflict,
)
from ..escalation.schemas import EscalationQueueEntry, QueueList, ResolveRequest
from ..messages.schemas import (
    Channel,
    Message,
    MessageFilters,
    MessageList,
    MessageStatus,
    Pagination,
)
from ..pipeline import InboxPipeline
from .webhooks import get_pipeline

router = APIRouter(prefix="/api", tags=["queue"])

logger = logging.getLogger(__name__)


def _resolve_workspace_id(request: Request) -> str:
    header = request.headers.get("x-workspace-id")
    try:
        return require_workspace_id(header)
    except RuntimeError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def _resolve_employee_id(request: Request) -> str:
    employee = (request.headers.get("x-employee-id") or "").strip()
    if not employee:
        raise HTTPException(status_code=403, detail="Employee identity missing")
    return employee


@contextmanager
def _service_context(request: Request) -> Iterator[tuple[InboxPipeline, str]]:
    pipeline = get_pipeline(request)
    workspace_id = _resolve_workspace_id(request)
    try:
        yield pipeline, workspace_id
    except (MessageNotFound, QueueEntryNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (QueueClaimConflict, StatusConflict) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/queue", response_model=QueueList)
def list_queue(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> QueueList:
    """Open escalation entries, oldest first."""
    pagination = Pagination(limit=limit, offset=offset)
    with _service_context(request) as (pipeline, workspace_id):
        items = pipeline.escalation.list_open(
            workspace_id, limit=pagination.limit, offset=pagination.offset
        )
    return QueueList(items=items, limit=pagination.limit, offset=pagination.offset)


@router.post("/queue/{entry_id}/claim", response_model=EscalationQueueEntry)
def claim_entry(entry_id: UUID, request: Request) -> EscalationQueueEntry:
    employee_id = _resolve_employee_id(request)
    with _service_context(request) as (pipeline, workspace_id):
        result = pipeline.escalation.claim(workspace_id, entry_id, employee_id)
    if not result.ok or result.entry is None:
        raise HTTPException(status_code=409, detail=str(result.error))
    return result.entry


@router.post("/queue/{entry_id}/resolve", response_model=Message)
def resolve_entry(entry_id: UUID, payload: ResolveRequest, request: Request) -> Message:
    employee_id = _resolve_employee_id(request)
    with _service_context(request) as (pipeline, workspace_id):
        return pipeline.escalation.resolve(
            workspace_id, entry_id, employee_id, MessageStatus(payload.outcome)
        )


@router.post("/queue/release-stale")
def release_stale_claims(request: Request) -> dict:
    with _service_context(request) as (pipeline, workspace_id):
        released = pipeline.escalation.release_stale_claims(workspace_id)
    return {"released": [str(entry.id) for entry in released]}


@router.get("/messages", response_model=MessageList)
def list_messages(
    request: Request,
    status: MessageStatus | None = None,
    channel: Channel | None = None,
    assigned_employee_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> MessageList:
    pagination = Pagination(limit=limit, offset=offset)
    filters = MessageFilters(
        status=status, channel=channel, assigned_employee_id=assigned_employee_id
    )
    with _service_context(request) as (pipeline, workspace_id):
        items = pipeline.messages.query(workspace_id, filters, pagination)
    return MessageList(items=items, limit=pagination.limit, offset=pagination.offset)


@router.post("/automation-rules/{rule_id}/disabled")
def rule_disabled(rule_id: str, request: Request) -> dict:
    """Event from the admin UI: cancel the rule's pending delayed actions."""
    with _service_context(request) as (pipeline, workspace_id):
        cancelled = pipeline.on_rule_disabled(workspace_id, rule_id)
    return {"cancelled": cancelled}


@router.delete("/messages/{message_id}/scheduled-actions")
def cancel_scheduled_actions(message_id: UUID, request: Request) -> dict:
    with _service_context(request) as (pipeline, workspace_id):
        if pipeline.messages.get(workspace_id, message_id) is None:
            raise MessageNotFound(f"Message {message_id} not found")
        cancelled = pipeline.on_message_deleted(message_id)
    return {"cancelled": cancelled}
