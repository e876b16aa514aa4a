"""Message Store: workspace-scoped persistence for messages and rule applications."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import UUID

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.db import ConnectionFactory, require_workspace_id
from ..errors import MessageNotFound, StatusConflict
from .schemas import (
    ApplicationOutcome,
    Message,
    MessageFilters,
    MessageStatus,
    Pagination,
    RuleApplication,
    RuleApplicationKey,
)

REPLY_ACTIONS = ("send_dm", "send_public_reply")

_UNSET: Any = object()


class MessageRepository(Protocol):
    """Abstraction over the message store used by the pipeline and queue."""

    def upsert(self, message: Message) -> Tuple[Message, bool]: ...

    def get(self, workspace_id: str, message_id: UUID) -> Optional[Message]: ...

    def query(
        self,
        workspace_id: str,
        filters: Optional[MessageFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[Message]: ...

    def update_status(
        self,
        workspace_id: str,
        message_id: UUID,
        from_status: MessageStatus,
        to_status: MessageStatus,
        *,
        assigned_employee_id: Optional[str] = _UNSET,
    ) -> Message: ...

    def set_ai_response(
        self, workspace_id: str, message_id: UUID, text: str, confidence: Optional[float]
    ) -> Message: ...

    def record_failure(self, workspace_id: str, message_id: UUID, error: str) -> Message: ...

    def try_record_application(self, application: RuleApplication) -> bool: ...

    def finish_application(
        self, workspace_id: str, key: RuleApplicationKey, outcome: ApplicationOutcome
    ) -> None: ...

    def get_application(
        self, workspace_id: str, key: RuleApplicationKey
    ) -> Optional[RuleApplication]: ...

    def list_applications(self, workspace_id: str, message_id: UUID) -> List[RuleApplication]: ...

    def has_successful_reply(
        self,
        workspace_id: str,
        conversation_id: str,
        *,
        exclude_message_id: Optional[UUID] = None,
    ) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _round_confidence(confidence: Optional[float]) -> Optional[float]:
    return None if confidence is None else round(float(confidence), 2)


class PostgresMessageRepository:
    """PostgreSQL implementation of :class:`MessageRepository`.

    Uniqueness of ``(workspace_id, channel, external_id)`` and of rule
    application keys is enforced by unique indexes, so concurrent deliveries
    race safely through ``INSERT ... ON CONFLICT DO NOTHING``.
    """

    _COLUMNS = (
        "id",
        "workspace_id",
        "agent_id",
        "channel",
        "external_id",
        "conversation_id",
        "sender_id",
        "sender_name",
        "text",
        "post_id",
        "type",
        "status",
        "ai_response",
        "ai_confidence",
        "assigned_employee_id",
        "last_error",
        "metadata",
        "created_at",
        "updated_at",
    )

    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    # Messages -----------------------------------------------------------------
    def upsert(self, message: Message) -> Tuple[Message, bool]:
        workspace_id = require_workspace_id(message.workspace_id)
        data = message.model_dump(mode="json")
        data["metadata"] = Jsonb(message.metadata)
        data["id"] = message.id
        data["created_at"] = message.created_at
        data["updated_at"] = message.updated_at
        columns = ", ".join(self._COLUMNS)
        placeholders = ", ".join(f"%({name})s" for name in self._COLUMNS)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                INSERT INTO messages ({columns})
                VALUES ({placeholders})
                ON CONFLICT (workspace_id, channel, external_id) DO NOTHING
                RETURNING *
                """,
                data,
            )
            row = cur.fetchone()
            if row is not None:
                return self._row_to_message(row), True
            cur.execute(
                """
                SELECT * FROM messages
                WHERE workspace_id = %s AND channel = %s AND external_id = %s
                """,
                (workspace_id, message.channel.value, message.external_id),
            )
            existing = cur.fetchone()
        if existing is None:  # pragma: no cover - row deleted between statements
            raise MessageNotFound(f"Message {message.external_id} vanished during upsert")
        return self._row_to_message(existing), False

    def get(self, workspace_id: str, message_id: UUID) -> Optional[Message]:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                "SELECT * FROM messages WHERE workspace_id = %s AND id = %s",
                (workspace_id, message_id),
            )
            row = cur.fetchone()
        return self._row_to_message(row) if row else None

    def query(
        self,
        workspace_id: str,
        filters: Optional[MessageFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[Message]:
        workspace_id = require_workspace_id(workspace_id)
        filters = filters or MessageFilters()
        pagination = pagination or Pagination()
        clauses = ["workspace_id = %s"]
        params: List[Any] = [workspace_id]
        if filters.status is not None:
            clauses.append("status = %s")
            params.append(filters.status.value)
        if filters.channel is not None:
            clauses.append("channel = %s")
            params.append(filters.channel.value)
        if filters.assigned_employee_id is not None:
            clauses.append("assigned_employee_id = %s")
            params.append(filters.assigned_employee_id)
        params.extend([pagination.limit, pagination.offset])
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                SELECT * FROM messages
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                params,
            )
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def update_status(
        self,
        workspace_id: str,
        message_id: UUID,
        from_status: MessageStatus,
        to_status: MessageStatus,
        *,
        assigned_employee_id: Optional[str] = _UNSET,
    ) -> Message:
        workspace_id = require_workspace_id(workspace_id)
        assignments = ["status = %s", "updated_at = now()"]
        params: List[Any] = [to_status.value]
        if assigned_employee_id is not _UNSET:
            assignments.append("assigned_employee_id = %s")
            params.append(assigned_employee_id)
        params.extend([workspace_id, message_id, from_status.value])
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE messages SET {', '.join(assignments)}
                WHERE workspace_id = %s AND id = %s AND status = %s
                RETURNING *
                """,
                params,
            )
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    "SELECT status FROM messages WHERE workspace_id = %s AND id = %s",
                    (workspace_id, message_id),
                )
                current = cur.fetchone()
        if row is None:
            if current is None:
                raise MessageNotFound(f"Message {message_id} not found")
            raise StatusConflict(
                f"Message {message_id} is {current['status']}, expected {from_status.value}"
            )
        return self._row_to_message(row)

    def set_ai_response(
        self, workspace_id: str, message_id: UUID, text: str, confidence: Optional[float]
    ) -> Message:
        return self._update_fields(
            workspace_id,
            message_id,
            {"ai_response": text, "ai_confidence": _round_confidence(confidence)},
        )

    def record_failure(self, workspace_id: str, message_id: UUID, error: str) -> Message:
        return self._update_fields(workspace_id, message_id, {"last_error": error})

    def _update_fields(
        self, workspace_id: str, message_id: UUID, fields: Dict[str, Any]
    ) -> Message:
        workspace_id = require_workspace_id(workspace_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE messages SET {assignments}, updated_at = now()
                WHERE workspace_id = %s AND id = %s
                RETURNING *
                """,
                [*fields.values(), workspace_id, message_id],
            )
            row = cur.fetchone()
        if row is None:
            raise MessageNotFound(f"Message {message_id} not found")
        return self._row_to_message(row)

    # Rule applications --------------------------------------------------------
    def try_record_application(self, application: RuleApplication) -> bool:
        workspace_id = require_workspace_id(application.workspace_id)
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO rule_applications
                    (message_id, rule_id, action_type, workspace_id, conversation_id, outcome)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (message_id, rule_id, action_type) DO NOTHING
                RETURNING message_id
                """,
                (
                    application.message_id,
                    application.rule_id,
                    application.action_type,
                    workspace_id,
                    application.conversation_id,
                    application.outcome.value,
                ),
            )
            return cur.fetchone() is not None

    def finish_application(
        self, workspace_id: str, key: RuleApplicationKey, outcome: ApplicationOutcome
    ) -> None:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE rule_applications SET outcome = %s, updated_at = now()
                WHERE workspace_id = %s AND message_id = %s AND rule_id = %s AND action_type = %s
                """,
                (outcome.value, workspace_id, key.message_id, key.rule_id, key.action_type),
            )

    def get_application(
        self, workspace_id: str, key: RuleApplicationKey
    ) -> Optional[RuleApplication]:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT * FROM rule_applications
                WHERE workspace_id = %s AND message_id = %s AND rule_id = %s AND action_type = %s
                """,
                (workspace_id, key.message_id, key.rule_id, key.action_type),
            )
            row = cur.fetchone()
        return RuleApplication(**row) if row else None

    def list_applications(self, workspace_id: str, message_id: UUID) -> List[RuleApplication]:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT * FROM rule_applications
                WHERE workspace_id = %s AND message_id = %s
                ORDER BY created_at ASC
                """,
                (workspace_id, message_id),
            )
            rows = cur.fetchall()
        return [RuleApplication(**row) for row in rows]

    def has_successful_reply(
        self,
        workspace_id: str,
        conversation_id: str,
        *,
        exclude_message_id: Optional[UUID] = None,
    ) -> bool:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT 1 FROM rule_applications
                WHERE workspace_id = %s AND conversation_id = %s
                  AND outcome = 'sent' AND action_type = ANY(%s)
                  AND (%s::uuid IS NULL OR message_id <> %s::uuid)
                LIMIT 1
                """,
                (
                    workspace_id,
                    conversation_id,
                    list(REPLY_ACTIONS),
                    exclude_message_id,
                    exclude_message_id,
                ),
            )
            return cur.fetchone() is not None

    def _row_to_message(self, row: Dict[str, Any]) -> Message:
        data = dict(row)
        if data.get("ai_confidence") is not None:
            data["ai_confidence"] = float(data["ai_confidence"])
        data["metadata"] = data.get("metadata") or {}
        return Message(**data)


class InMemoryMessageRepository(MessageRepository):
    """Thread-safe in-process store used by tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: Dict[UUID, Message] = {}
        self._natural_keys: Dict[Tuple[str, str, str], UUID] = {}
        self._applications: Dict[Tuple[UUID, str, str], RuleApplication] = {}

    def upsert(self, message: Message) -> Tuple[Message, bool]:
        workspace_id = require_workspace_id(message.workspace_id)
        natural_key = (workspace_id, message.channel.value, message.external_id)
        with self._lock:
            existing_id = self._natural_keys.get(natural_key)
            if existing_id is not None:
                return self._messages[existing_id].model_copy(deep=True), False
            stored = message.model_copy(deep=True)
            self._messages[stored.id] = stored
            self._natural_keys[natural_key] = stored.id
            return stored.model_copy(deep=True), True

    def get(self, workspace_id: str, message_id: UUID) -> Optional[Message]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.workspace_id != workspace_id:
                return None
            return message.model_copy(deep=True)

    def query(
        self,
        workspace_id: str,
        filters: Optional[MessageFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[Message]:
        workspace_id = require_workspace_id(workspace_id)
        filters = filters or MessageFilters()
        pagination = pagination or Pagination()
        with self._lock:
            items = [
                m.model_copy(deep=True)
                for m in self._messages.values()
                if m.workspace_id == workspace_id
                and (filters.status is None or m.status == filters.status)
                and (filters.channel is None or m.channel == filters.channel)
                and (
                    filters.assigned_employee_id is None
                    or m.assigned_employee_id == filters.assigned_employee_id
                )
            ]
        items.sort(key=lambda m: (m.created_at, str(m.id)), reverse=True)
        return items[pagination.offset : pagination.offset + pagination.limit]

    def update_status(
        self,
        workspace_id: str,
        message_id: UUID,
        from_status: MessageStatus,
        to_status: MessageStatus,
        *,
        assigned_employee_id: Optional[str] = _UNSET,
    ) -> Message:
        with self._lock:
            message = self._require(workspace_id, message_id)
            if message.status != from_status:
                raise StatusConflict(
                    f"Message {message_id} is {message.status.value}, expected {from_status.value}"
                )
            message.status = to_status
            if assigned_employee_id is not _UNSET:
                message.assigned_employee_id = assigned_employee_id
            message.updated_at = _utcnow()
            return message.model_copy(deep=True)

    def set_ai_response(
        self, workspace_id: str, message_id: UUID, text: str, confidence: Optional[float]
    ) -> Message:
        with self._lock:
            message = self._require(workspace_id, message_id)
            message.ai_response = text
            message.ai_confidence = _round_confidence(confidence)
            message.updated_at = _utcnow()
            return message.model_copy(deep=True)

    def record_failure(self, workspace_id: str, message_id: UUID, error: str) -> Message:
        with self._lock:
            message = self._require(workspace_id, message_id)
            message.last_error = error
            message.updated_at = _utcnow()
            return message.model_copy(deep=True)

    def try_record_application(self, application: RuleApplication) -> bool:
        require_workspace_id(application.workspace_id)
        key = (application.message_id, application.rule_id, application.action_type)
        with self._lock:
            if key in self._applications:
                return False
            self._applications[key] = application.model_copy(deep=True)
            return True

    def finish_application(
        self, workspace_id: str, key: RuleApplicationKey, outcome: ApplicationOutcome
    ) -> None:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            application = self._applications.get(
                (key.message_id, key.rule_id, key.action_type)
            )
            if application is None or application.workspace_id != workspace_id:
                return
            application.outcome = outcome
            application.updated_at = _utcnow()

    def get_application(
        self, workspace_id: str, key: RuleApplicationKey
    ) -> Optional[RuleApplication]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            application = self._applications.get(
                (key.message_id, key.rule_id, key.action_type)
            )
            if application is None or application.workspace_id != workspace_id:
                return None
            return application.model_copy(deep=True)

    def list_applications(self, workspace_id: str, message_id: UUID) -> List[RuleApplication]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            return [
                app.model_copy(deep=True)
                for app in self._applications.values()
                if app.workspace_id == workspace_id and app.message_id == message_id
            ]

    def has_successful_reply(
        self,
        workspace_id: str,
        conversation_id: str,
        *,
        exclude_message_id: Optional[UUID] = None,
    ) -> bool:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            return any(
                app.workspace_id == workspace_id
                and app.conversation_id == conversation_id
                and app.outcome == ApplicationOutcome.SENT
                and app.action_type in REPLY_ACTIONS
                and app.message_id != exclude_message_id
                for app in self._applications.values()
            )

    def _require(self, workspace_id: str, message_id: UUID) -> Message:
        workspace_id = require_workspace_id(workspace_id)
        message = self._messages.get(message_id)
        if message is None or message.workspace_id != workspace_id:
            raise MessageNotFound(f"Message {message_id} not found")
        return message

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)


__all__ = [
    "InMemoryMessageRepository",
    "MessageRepository",
    "PostgresMessageRepository",
    "REPLY_ACTIONS",
]
