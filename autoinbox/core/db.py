"""Database helpers for workspace-scoped psycopg access."""

from __future__ import annotations

import logging
from collections.abc import Callable

import psycopg

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], psycopg.Connection]


def require_workspace_id(workspace_id: str | None) -> str:
    """Return ``workspace_id`` or raise ``RuntimeError`` when it is missing."""

    if workspace_id is None:
        raise RuntimeError("Workspace context missing")
    value = str(workspace_id).strip()
    if not value:
        raise RuntimeError("Workspace context missing")
    return value


def connection_factory(database_url: str | None) -> ConnectionFactory:
    """Build a callable opening a fresh connection per unit of work.

    Connections are used as context managers by the repositories, so each
    operation commits on success and rolls back on error.
    """

    if not database_url:
        raise RuntimeError("DATABASE_URL not configured")

    def _connect() -> psycopg.Connection:
        try:
            return psycopg.connect(database_url)
        except psycopg.OperationalError:
            logger.exception("Failed to connect to the message store database")
            raise

    return _connect


__all__ = ["ConnectionFactory", "connection_factory", "require_workspace_id"]
