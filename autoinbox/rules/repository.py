"""Read access to automation rules owned by the admin UI."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol

from psycopg.rows import dict_row
from pydantic import ValidationError

from ..core.db import ConnectionFactory, require_workspace_id
from ..errors import RuleConfigInvalid
from .schemas import AutomationRule

logger = logging.getLogger(__name__)


class RuleRepository(Protocol):
    def list_enabled(
        self, workspace_id: str, agent_id: Optional[str] = None
    ) -> List[AutomationRule]: ...

    def get(self, workspace_id: str, rule_id: str) -> Optional[AutomationRule]: ...


def _hydrate(rows: Iterable[Dict[str, Any]]) -> List[AutomationRule]:
    """Validate raw rows, skipping (and logging) rules that cannot run."""

    rules: List[AutomationRule] = []
    for row in rows:
        try:
            rules.append(AutomationRule.model_validate(row))
        except ValidationError as exc:
            error = RuleConfigInvalid(f"Rule {row.get('id')} is misconfigured: {exc.errors()}")
            logger.warning(
                str(error),
                extra={"rule_id": row.get("id"), "workspace_id": row.get("workspace_id")},
            )
    rules.sort(key=lambda r: (r.created_at, r.id))
    return rules


class PostgresRuleRepository:
    """PostgreSQL implementation of :class:`RuleRepository`."""

    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def list_enabled(
        self, workspace_id: str, agent_id: Optional[str] = None
    ) -> List[AutomationRule]:
        workspace_id = require_workspace_id(workspace_id)
        sql = """
            SELECT * FROM automation_rules
            WHERE workspace_id = %s AND enabled
        """
        params: List[Any] = [workspace_id]
        if agent_id:
            sql += " AND agent_id = %s"
            params.append(agent_id)
        sql += " ORDER BY created_at ASC, id ASC"
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return _hydrate(self._normalise(row) for row in rows)

    def get(self, workspace_id: str, rule_id: str) -> Optional[AutomationRule]:
        workspace_id = require_workspace_id(workspace_id)
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                "SELECT * FROM automation_rules WHERE workspace_id = %s AND id = %s",
                (workspace_id, rule_id),
            )
            row = cur.fetchone()
        if row is None:
            return None
        hydrated = _hydrate([self._normalise(row)])
        return hydrated[0] if hydrated else None

    @staticmethod
    def _normalise(row: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(row)
        data["id"] = str(data["id"])
        data["workspace_id"] = str(data["workspace_id"])
        data["agent_id"] = str(data["agent_id"])
        return data


class InMemoryRuleRepository(RuleRepository):
    """Rule snapshot held in memory; rows are validated like database rows."""

    def __init__(self, rules: Optional[Iterable[Any]] = None) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, Dict[str, Any]] = {}
        for rule in rules or []:
            self.add(rule)

    def add(self, rule: Any) -> None:
        row = rule.model_dump() if isinstance(rule, AutomationRule) else dict(rule)
        with self._lock:
            self._rows[str(row["id"])] = row

    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        with self._lock:
            self._rows[rule_id]["enabled"] = enabled

    def list_enabled(
        self, workspace_id: str, agent_id: Optional[str] = None
    ) -> List[AutomationRule]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            rows = [
                dict(row)
                for row in self._rows.values()
                if row.get("workspace_id") == workspace_id
                and row.get("enabled", True)
                and (agent_id is None or row.get("agent_id") == agent_id)
            ]
        return _hydrate(rows)

    def get(self, workspace_id: str, rule_id: str) -> Optional[AutomationRule]:
        workspace_id = require_workspace_id(workspace_id)
        with self._lock:
            row = self._rows.get(rule_id)
            row = dict(row) if row and row.get("workspace_id") == workspace_id else None
        if row is None:
            return None
        hydrated = _hydrate([row])
        return hydrated[0] if hydrated else None
