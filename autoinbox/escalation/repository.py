"""Persistence for escalation queue entries."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import UUID

from psycopg.rows import dict_row

from ..core.db import ConnectionFactory, require_workspace_id
from .schemas import EscalationQueueEntry


class EscalationRepository(Protocol):
    def create(self, entry: EscalationQueueEntry) -> Tuple[EscalationQueueEntry, bool]: ...

    def get(self, workspace_id: str, entry_id: UUID) -> Optional[EscalationQueueEntry]: ...

    def get_open_for_message(
        self, workspace_id: str, message_id: UUID
    ) -> Optional[EscalationQueueEntry]: ...

    def claim(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]: ...

    def unclaim(self, workspace_id: str, entry_id: UUID, employee_id: str) -> None: ...

    def close(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]: ...

    def release_stale(
        self, workspace_id: str, claimed_before: datetime
    ) -> List[EscalationQueueEntry]: ...

    def list_open(
        self, workspace_id: str, limit: int = 50, offset: int = 0
    ) -> List[EscalationQueueEntry]: ...

    def open_load(self, workspace_id: str) -> Dict[str, int]: ...


class PostgresEscalationRepository:
    """PostgreSQL implementation of :class:`EscalationRepository`.

    A partial unique index on ``message_id WHERE closed_at IS NULL`` keeps a
    single open entry per message; claims are a compare-and-swap on
    ``assigned_employee_id IS NULL``.
    """

    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def _fetch_one(self, sql: str, params: Any) -> Optional[EscalationQueueEntry]:
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return EscalationQueueEntry(**row) if row else None

    def create(self, entry: EscalationQueueEntry) -> Tuple[EscalationQueueEntry, bool]:
        workspace_id = require_workspace_id(entry.workspace_id)
        created = self._fetch_one(
            """
            INSERT INTO escalation_queue
                (id, message_id, workspace_id, reason, offered_to, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (message_id) WHERE closed_at IS NULL DO NOTHING
            RETURNING *
            """,
            (
                entry.id,
                entry.message_id,
                workspace_id,
                entry.reason.value,
                entry.offered_to,
                entry.created_at,
            ),
        )
        if created is not None:
            return created, True
        existing = self.get_open_for_message(workspace_id, entry.message_id)
        if existing is None:  # pragma: no cover - closed between statements
            return self.create(entry)
        return existing, False

    def get(self, workspace_id: str, entry_id: UUID) -> Optional[EscalationQueueEntry]:
        return self._fetch_one(
            "SELECT * FROM escalation_queue WHERE workspace_id = %s AND id = %s",
            (require_workspace_id(workspace_id), entry_id),
        )

    def get_open_for_message(
        self, workspace_id: str, message_id: UUID
    ) -> Optional[EscalationQueueEntry]:
        return self._fetch_one(
            """
            SELECT * FROM escalation_queue
            WHERE workspace_id = %s AND message_id = %s AND closed_at IS NULL
            """,
            (require_workspace_id(workspace_id), message_id),
        )

    def claim(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]:
        return self._fetch_one(
            """
            UPDATE escalation_queue
            SET assigned_employee_id = %s, claimed_at = %s
            WHERE workspace_id = %s AND id = %s
              AND assigned_employee_id IS NULL AND closed_at IS NULL
            RETURNING *
            """,
            (employee_id, now, require_workspace_id(workspace_id), entry_id),
        )

    def unclaim(self, workspace_id: str, entry_id: UUID, employee_id: str) -> None:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE escalation_queue
                SET assigned_employee_id = NULL, claimed_at = NULL
                WHERE workspace_id = %s AND id = %s AND assigned_employee_id = %s
                """,
                (require_workspace_id(workspace_id), entry_id, employee_id),
            )

    def close(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]:
        return self._fetch_one(
            """
            UPDATE escalation_queue SET closed_at = %s
            WHERE workspace_id = %s AND id = %s
              AND assigned_employee_id = %s AND closed_at IS NULL
            RETURNING *
            """,
            (now, require_workspace_id(workspace_id), entry_id, employee_id),
        )

    def release_stale(
        self, workspace_id: str, claimed_before: datetime
    ) -> List[EscalationQueueEntry]:
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                UPDATE escalation_queue
                SET assigned_employee_id = NULL, claimed_at = NULL
                WHERE workspace_id = %s AND closed_at IS NULL
                  AND claimed_at IS NOT NULL AND claimed_at < %s
                RETURNING *
                """,
                (require_workspace_id(workspace_id), claimed_before),
            )
            rows = cur.fetchall()
        return [EscalationQueueEntry(**row) for row in rows]

    def list_open(
        self, workspace_id: str, limit: int = 50, offset: int = 0
    ) -> List[EscalationQueueEntry]:
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT * FROM escalation_queue
                WHERE workspace_id = %s AND closed_at IS NULL
                ORDER BY created_at ASC, id ASC
                LIMIT %s OFFSET %s
                """,
                (require_workspace_id(workspace_id), limit, offset),
            )
            rows = cur.fetchall()
        return [EscalationQueueEntry(**row) for row in rows]

    def open_load(self, workspace_id: str) -> Dict[str, int]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT assigned_employee_id, count(*) FROM escalation_queue
                WHERE workspace_id = %s AND closed_at IS NULL
                  AND assigned_employee_id IS NOT NULL
                GROUP BY assigned_employee_id
                """,
                (require_workspace_id(workspace_id),),
            )
            return {str(employee): int(count) for employee, count in cur.fetchall()}


class InMemoryEscalationRepository(EscalationRepository):
    """Lock-protected queue emulating the database's conditional writes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[UUID, EscalationQueueEntry] = {}

    def _scoped(self, workspace_id: str, entry_id: UUID) -> Optional[EscalationQueueEntry]:
        entry = self._entries.get(entry_id)
        if entry is None or entry.workspace_id != workspace_id:
            return None
        return entry

    def create(self, entry: EscalationQueueEntry) -> Tuple[EscalationQueueEntry, bool]:
        workspace_id = require_workspace_id(entry.workspace_id)
        with self._lock:
            for existing in self._entries.values():
                if (
                    existing.workspace_id == workspace_id
                    and existing.message_id == entry.message_id
                    and existing.is_open
                ):
                    return existing.model_copy(), False
            stored = entry.model_copy()
            self._entries[stored.id] = stored
            return stored.model_copy(), True

    def get(self, workspace_id: str, entry_id: UUID) -> Optional[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            entry = self._scoped(workspace_id, entry_id)
            return entry.model_copy() if entry else None

    def get_open_for_message(
        self, workspace_id: str, message_id: UUID
    ) -> Optional[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.workspace_id == workspace_id
                    and entry.message_id == message_id
                    and entry.is_open
                ):
                    return entry.model_copy()
        return None

    def claim(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            entry = self._scoped(workspace_id, entry_id)
            if entry is None or not entry.is_open or entry.assigned_employee_id is not None:
                return None
            entry.assigned_employee_id = employee_id
            entry.claimed_at = now
            return entry.model_copy()

    def unclaim(self, workspace_id: str, entry_id: UUID, employee_id: str) -> None:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            entry = self._scoped(workspace_id, entry_id)
            if entry is not None and entry.assigned_employee_id == employee_id:
                entry.assigned_employee_id = None
                entry.claimed_at = None

    def close(
        self, workspace_id: str, entry_id: UUID, employee_id: str, now: datetime
    ) -> Optional[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            entry = self._scoped(workspace_id, entry_id)
            if entry is None or not entry.is_open or entry.assigned_employee_id != employee_id:
                return None
            entry.closed_at = now
            return entry.model_copy()

    def release_stale(
        self, workspace_id: str, claimed_before: datetime
    ) -> List[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        released: List[EscalationQueueEntry] = []
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.workspace_id == workspace_id
                    and entry.is_open
                    and entry.claimed_at is not None
                    and entry.claimed_at < claimed_before
                ):
                    previous = entry.model_copy()
                    entry.assigned_employee_id = None
                    entry.claimed_at = None
                    released.append(previous)
        return released

    def list_open(
        self, workspace_id: str, limit: int = 50, offset: int = 0
    ) -> List[EscalationQueueEntry]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            items = [
                e.model_copy()
                for e in self._entries.values()
                if e.workspace_id == workspace_id and e.is_open
            ]
        items.sort(key=lambda e: (e.created_at, str(e.id)))
        return items[offset : offset + limit]

    def open_load(self, workspace_id: str) -> Dict[str, int]:
        workspace_id = require_workspace_id(workspace_id)
        load: Dict[str, int] = {}
        with self._lock:
            for entry in self._entries.values():
                if entry.workspace_id == workspace_id and entry.is_open and entry.assigned_employee_id:
                    load[entry.assigned_employee_id] = load.get(entry.assigned_employee_id, 0) + 1
        return load
